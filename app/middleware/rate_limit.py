"""
Rate limiting for the HTTP API using slowapi.

Limits requests per API key (or client IP) on the HTTP surface only.
Conversation-level throttling of a single identity is the transport's
concern and is not handled here.
"""
import os
import logging
from uuid import uuid4
from datetime import datetime

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request
from fastapi.responses import JSONResponse

from app.middleware.error_handling import ErrorCode, ErrorResponse

logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv('RATE_LIMIT_ENABLED', 'true').lower() == 'true'
RATE_LIMIT_DEFAULT = os.getenv('RATE_LIMIT_DEFAULT', '120/minute')
RATE_LIMIT_MESSAGES = os.getenv('RATE_LIMIT_MESSAGES', '300/minute')  # Inbound message webhook
RATE_LIMIT_STORAGE_URI = os.getenv('RATE_LIMIT_STORAGE_URI')


def get_api_key_or_ip(request: Request) -> str:
    """
    Get rate limit key from API key header or fallback to IP address.
    """
    api_key = request.headers.get('X-API-KEY')
    if api_key:
        # First 16 chars only
        return f"apikey:{api_key[:16]}"
    return get_remote_address(request)


def create_limiter() -> Limiter:
    """
    Create a rate limiter.

    Uses shared storage when RATE_LIMIT_STORAGE_URI is set (e.g. a redis://
    URL), otherwise in-memory counters per process.
    """
    if RATE_LIMIT_STORAGE_URI and RATE_LIMIT_ENABLED:
        return Limiter(
            key_func=get_api_key_or_ip,
            default_limits=[RATE_LIMIT_DEFAULT],
            storage_uri=RATE_LIMIT_STORAGE_URI,
            strategy="fixed-window",
            enabled=True
        )

    return Limiter(
        key_func=get_api_key_or_ip,
        default_limits=[RATE_LIMIT_DEFAULT],
        strategy="fixed-window",
        enabled=RATE_LIMIT_ENABLED
    )


limiter = create_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 in the standard error envelope with a Retry-After header."""
    logger.warning(f"Rate limit exceeded for {get_api_key_or_ip(request)}: {exc.detail}")

    retry_after = getattr(exc, 'retry_after', 60)
    error = ErrorResponse(
        error_id=str(uuid4()),
        code=ErrorCode.RATE_LIMITED.value,
        message="Rate limit exceeded. Please slow down your requests.",
        status_code=429,
        timestamp=datetime.utcnow().isoformat(),
        path=request.url.path,
        details={"limit": str(exc.detail), "retry_after_seconds": retry_after}
    )
    return JSONResponse(
        status_code=429,
        content=error.to_dict(),
        headers={"Retry-After": str(retry_after)}
    )
