"""
Authentication middleware for API key validation.
"""
import os
import hmac
import logging
from typing import Optional, List
from uuid import uuid4
from datetime import datetime

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.middleware.error_handling import ErrorCode, ErrorResponse

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE_PATHS = ["/health", "/", "/docs", "/redoc", "/openapi.json"]


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Middleware to validate X-API-KEY header for incoming requests."""

    def __init__(self, app, exclude_paths: Optional[List[str]] = None):
        """
        Initialize API key middleware.

        Args:
            app: FastAPI application
            exclude_paths: Paths that skip validation. "/" matches only the
                root; every other entry matches as a prefix.
        """
        super().__init__(app)
        self.api_key = os.getenv('API_KEY')
        self.environment = os.getenv('ENVIRONMENT', 'development').lower()
        self.exclude_paths = exclude_paths or DEFAULT_EXCLUDE_PATHS

        # In production, API_KEY is REQUIRED
        if self.environment == 'production' and not self.api_key:
            raise ValueError("API_KEY environment variable is REQUIRED in production")

    def _is_excluded(self, path: str) -> bool:
        for excluded in self.exclude_paths:
            if excluded == "/":
                if path == "/":
                    return True
            elif path.startswith(excluded):
                return True
        return False

    def _should_bypass_auth(self) -> bool:
        """Allow explicit auth bypass for non-production environments (e.g., tests)."""
        bypass = os.getenv("AUTH_BYPASS", "").lower() == "true"
        if not bypass:
            return False
        # Never allow bypass in production
        return self.environment != "production"

    def _reject(self, request: Request, code: ErrorCode, status_code: int, message: str) -> JSONResponse:
        error = ErrorResponse(
            error_id=str(uuid4()),
            code=code.value,
            message=message,
            status_code=status_code,
            timestamp=datetime.utcnow().isoformat(),
            path=request.url.path
        )
        return JSONResponse(status_code=status_code, content=error.to_dict())

    async def dispatch(self, request: Request, call_next):
        """
        Validate API key for incoming requests.

        Returns:
            Response from next handler or 401/403 error
        """
        if self._is_excluded(request.url.path):
            return await call_next(request)

        if self._should_bypass_auth():
            return await call_next(request)

        if not self.api_key:
            if self.environment == 'production':
                logger.error("API_KEY not configured in production - blocking request")
                return self._reject(
                    request, ErrorCode.INTERNAL_ERROR, 500,
                    "Server misconfiguration: authentication not properly configured"
                )
            # Development only: allow without auth
            logger.warning("No API_KEY configured - allowing request (development mode only)")
            return await call_next(request)

        api_key = request.headers.get("X-API-KEY")
        if not api_key:
            return self._reject(request, ErrorCode.UNAUTHORIZED, 401, "X-API-KEY header is required")

        # Constant-time comparison
        if not hmac.compare_digest(api_key, self.api_key):
            logger.warning(f"Invalid API key on {request.url.path}")
            return self._reject(request, ErrorCode.FORBIDDEN, 403, "Invalid API key")

        return await call_next(request)
