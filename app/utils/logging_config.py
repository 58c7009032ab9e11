"""
Structured Logging Configuration.

JSON-structured logging with request correlation and per-turn context.

Key features:
1. JSON-formatted logs outside development
2. Request correlation IDs
3. Masked identity on every record of a conversation turn
4. Turn timing
"""
import os
import sys
import json
import time
import logging
import traceback
from typing import Dict, Any
from datetime import datetime
from uuid import uuid4
from contextvars import ContextVar
from functools import wraps

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

# Context variables for request-scoped data
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
identity_var: ContextVar[str] = ContextVar("identity", default="")
extra_context_var: ContextVar[Dict[str, Any]] = ContextVar("extra_context", default={})


class StructuredFormatter(logging.Formatter):
    """JSON-formatted log formatter."""

    def __init__(self, include_stack: bool = False):
        super().__init__()
        self.include_stack = include_stack
        self.service_name = os.getenv("SERVICE_NAME", "permit-conversation")
        self.environment = os.getenv("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment
        }

        request_id = request_id_var.get()
        if request_id:
            log_entry["request_id"] = request_id

        identity = identity_var.get()
        if identity:
            log_entry["identity"] = identity

        extra_context = extra_context_var.get()
        if extra_context:
            log_entry["context"] = extra_context

        log_entry["source"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None
            }
            if self.include_stack:
                log_entry["exception"]["stack_trace"] = traceback.format_exception(*record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    def __init__(self, app, logger_name: str = "api"):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next):
        """Log request and response with timing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request_id_var.set(request_id)

        start_time = time.perf_counter()
        self.logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "extra_fields": {
                    "event": "request_started",
                    "method": request.method,
                    "path": request.url.path,
                    "client_ip": request.client.host if request.client else None
                }
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.logger.error(
                f"Request failed: {request.method} {request.url.path} - {str(e)}",
                extra={
                    "extra_fields": {
                        "event": "request_failed",
                        "path": request.url.path,
                        "duration_ms": round(duration_ms, 2)
                    }
                },
                exc_info=True
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        self.logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "extra_fields": {
                    "event": "request_completed",
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2)
                }
            }
        )
        response.headers["X-Request-ID"] = request_id
        return response


def setup_logging(
    level: str = None,
    json_format: bool = True,
    include_stack: bool = False
) -> None:
    """
    Setup application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting (ignored in development)
        include_stack: Include stack traces in JSON
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)

    if json_format and os.getenv("ENVIRONMENT", "development") != "development":
        handler.setFormatter(StructuredFormatter(include_stack=include_stack))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={level}, json_format={json_format}")


def log_performance(operation_name: str = None):
    """Decorator to log how long a synchronous operation took."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            op_name = operation_name or func.__name__
            logger = logging.getLogger(func.__module__)

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Operation failed: {op_name}",
                    extra={
                        "extra_fields": {
                            "event": "operation_failed",
                            "operation": op_name,
                            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                            "error": str(e)
                        }
                    }
                )
                raise

            logger.debug(
                f"Operation completed: {op_name}",
                extra={
                    "extra_fields": {
                        "event": "operation_completed",
                        "operation": op_name,
                        "duration_ms": round((time.perf_counter() - start) * 1000, 2)
                    }
                }
            )
            return result
        return wrapper
    return decorator


class LogContext:
    """Context manager that scopes logging context to one conversation turn."""

    def __init__(self, identity: str = "", **kwargs):
        self.identity = identity
        self.context = kwargs
        self.previous_context = {}
        self._identity_token = None

    def __enter__(self):
        self.previous_context = extra_context_var.get()
        extra_context_var.set({**self.previous_context, **self.context})
        if self.identity:
            self._identity_token = identity_var.set(self.identity)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        extra_context_var.set(self.previous_context)
        if self._identity_token is not None:
            identity_var.reset(self._identity_token)
        return False
