"""
Utility modules for the permit conversation service.
"""
from .cache import LocalCache, create_redis_client

__all__ = ['LocalCache', 'create_redis_client']
