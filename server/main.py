"""
FastAPI backend for the chat-driven deployment bot.

Receives Slack events, gates deployments on GitHub checks and drives
Ansible playbook runs.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from middleware.auth import AuthMiddleware
from routers import deployments, slack

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    set_startup_time()
    profiles = container.target_profiles()
    logger.info("Starting deployment bot",
                targets=[p.name for p in profiles.values()],
                check_repos=settings.check_repos)
    if not profiles:
        logger.warning("No deployment targets configured (set SLACK_ROOM_PROD / SLACK_ROOM_TEST)")

    yield

    # Shutdown
    if container.registry().cancel_all("system"):
        logger.warning("Cancelled running deployments on shutdown")
    await slack.wait_for_commands()
    await container.check_aggregator().aclose()
    await container.slack_client().aclose()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Deployment Bot",
    version="1.0.0",
    description="Chat-triggered Ansible deployments gated on GitHub checks",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

# Bearer token for /api routes
app.add_middleware(AuthMiddleware)

# Include routers
app.include_router(slack.router)
app.include_router(deployments.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    return {
        "service": "deploy-bot",
        "version": app.version,
        "environment": "development" if settings.debug else "production",
        **get_health_status(container.registry(), settings),
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting deployment bot",
                host=settings.host, port=settings.port, debug=settings.debug)
    # Deployments live in process memory, so a single worker only
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log"] if settings.debug else None,
        workers=1,
    )
