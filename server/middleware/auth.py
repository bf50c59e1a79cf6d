"""Request authentication: bearer token for the REST API, signatures for Slack."""

import hashlib
import hmac
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from constants import SLACK_SIGNATURE_MAX_AGE
from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)

# Path prefixes that require the API bearer token
PROTECTED_PREFIXES = (
    "/api/",
)


class AuthMiddleware(BaseHTTPMiddleware):
    """Protect the REST API with the configured bearer token."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        settings = container.settings()

        if not settings.api_token:
            return JSONResponse(
                status_code=403,
                content={"detail": "API disabled (no API_TOKEN configured)"}
            )

        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token, settings.api_token):
            return JSONResponse(
                status_code=401,
                content={"detail": "Not authenticated"}
            )

        return await call_next(request)


def compute_slack_signature(secret: str, timestamp: str, body: bytes) -> str:
    base = b"v0:" + timestamp.encode() + b":" + body
    digest = hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()
    return f"v0={digest}"


async def verify_slack_request(request: Request) -> bytes:
    """FastAPI dependency checking Slack's request signature; returns the raw body."""
    settings = container.settings()
    if not settings.slack_signing_secret:
        raise HTTPException(status_code=503, detail="Slack signing secret not configured")

    timestamp = request.headers.get("x-slack-request-timestamp", "")
    signature = request.headers.get("x-slack-signature", "")
    body = await request.body()

    try:
        age = abs(time.time() - int(timestamp))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Slack timestamp") from None
    if age > SLACK_SIGNATURE_MAX_AGE:
        raise HTTPException(status_code=401, detail="Stale Slack request")

    expected = compute_slack_signature(settings.slack_signing_secret, timestamp, body)
    if not hmac.compare_digest(expected, signature):
        logger.warning("Rejected Slack request with invalid signature", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid Slack signature")

    return body
