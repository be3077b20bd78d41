"""
Vigil Persistence Layer

Public exports for the Redis connection and baseline snapshot store.
"""

from .connection import get_redis_client
from .baseline_store import BaselineStore

__all__ = [
    "get_redis_client",
    "BaselineStore",
]
