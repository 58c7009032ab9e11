"""
Middleware package for FastAPI application.
"""
from app.middleware.auth import APIKeyMiddleware
from app.middleware.error_handling import setup_error_handling

__all__ = ['APIKeyMiddleware', 'setup_error_handling']
