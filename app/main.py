"""
FastAPI application main module.
"""
import os
import json
import logging
from contextlib import asynccontextmanager

# Initialize Sentry BEFORE importing anything else (for best error capture)
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

sentry_dsn = os.getenv('SENTRY_DSN')
if sentry_dsn:
    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[
            FastApiIntegration(),
            StarletteIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests traced
        environment=os.getenv('ENVIRONMENT', 'development'),
        send_default_pii=False,
    )
    logging.info("Sentry initialized for error monitoring")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from dotenv import load_dotenv

from app.core.container import build_container
from app.routers.health import router as health_router
from app.routers.conversation import router as conversation_router
from app.middleware.auth import APIKeyMiddleware
from app.middleware.error_handling import setup_error_handling
from app.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from app.utils.logging_config import setup_logging, RequestLoggingMiddleware

dotenv_override = os.getenv("DOTENV_OVERRIDE", "false").lower() == "true"
load_dotenv(override=dotenv_override)

app_name = os.getenv('APP_NAME')
app_version = os.getenv('APP_VERSION')
environment = os.getenv('ENVIRONMENT', 'development')

setup_logging(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    json_format=environment != 'development'
)

# Parse CORS origins from JSON string
cors_origins_str = os.getenv('CORS_ORIGINS')
try:
    cors_origins = json.loads(cors_origins_str) if cors_origins_str else None
except json.JSONDecodeError:
    cors_origins = None

# Parse allowed hosts from JSON string
allowed_hosts_str = os.getenv('ALLOWED_HOSTS')
try:
    allowed_hosts = json.loads(allowed_hosts_str) if allowed_hosts_str else None
except json.JSONDecodeError:
    allowed_hosts = None

# Validate required environment variables
required_vars = ['APP_NAME', 'APP_VERSION', 'CORS_ORIGINS', 'ALLOWED_HOSTS']
missing_vars = [var for var in required_vars if not os.getenv(var)]
if missing_vars:
    raise ValueError(f"Missing required environment variables: {', '.join(missing_vars)}")

if not cors_origins:
    raise ValueError("CORS_ORIGINS must be a valid JSON array")
if not allowed_hosts:
    raise ValueError("ALLOWED_HOSTS must be a valid JSON array")

# Log non-sensitive configuration only
logger = logging.getLogger(__name__)
logger.info(f"Starting {app_name} v{app_version} in {environment} environment")
logger.info(f"CORS origins: {len(cors_origins)} configured")

EXCLUDED_PATHS = ["/health", "/", "/docs", "/redoc", "/openapi.json"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container and run maintenance for the life of the process."""
    if getattr(app.state, "container", None) is None:
        app.state.container = build_container()
    container = app.state.container

    await container.scheduler.start()
    try:
        yield
    finally:
        await container.scheduler.stop()
        logger.info("Conversation engine shut down")


app = FastAPI(
    title=app_name,
    description="Conversation state engine for permit intake over messaging",
    version=app_version,
    lifespan=lifespan,
    swagger_ui_parameters={
        "persistAuthorization": True
    }
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

setup_error_handling(app)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app_name,
        version=app_version,
        description="Conversation state engine for permit intake over messaging",
        routes=app.routes,
    )

    # Add API key security scheme
    openapi_schema["components"]["securitySchemes"] = {
        "ApiKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-KEY"
        }
    }

    # Apply security to all endpoints except excluded ones
    for path in openapi_schema["paths"]:
        if path == "/" or any(path.startswith(excluded) for excluded in EXCLUDED_PATHS if excluded != "/"):
            continue
        for method in openapi_schema["paths"][path]:
            openapi_schema["paths"][path][method]["security"] = [{"ApiKeyAuth": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-KEY", "X-Request-ID", "Accept"],
)

# Add rate limiting middleware
app.add_middleware(SlowAPIMiddleware)

# Add API key authentication middleware
app.add_middleware(APIKeyMiddleware, exclude_paths=EXCLUDED_PATHS)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(health_router)
app.include_router(conversation_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
