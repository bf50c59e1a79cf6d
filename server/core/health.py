"""Health check utilities.

Provides uptime tracking and the status document served at /health.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

from services.deployment import ACTIVE_STATES

if TYPE_CHECKING:
    from core.config import Settings
    from services.deployment import DeploymentRegistry

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_health_status(
    registry: "DeploymentRegistry",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get health status for /health endpoint.

    Returns:
        Dict containing status, uptime, deployment counters and feature flags.
    """
    deployments = [deployment for _, deployment in registry.list()]
    return {
        "status": "healthy",
        "uptime_seconds": round(get_uptime(), 1),
        "deployments": {
            "tracked": len(deployments),
            "live": sum(1 for d in deployments if not d.is_terminal()),
            "active": sum(1 for d in deployments if d.state in ACTIVE_STATES),
        },
        "features": {
            "slack": bool(settings.slack_bot_token and settings.slack_signing_secret),
            "checks": bool(settings.check_repos),
            "api": bool(settings.api_token),
        },
    }
