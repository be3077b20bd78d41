import os
import logging
from functools import lru_cache

import redis
from redis.exceptions import RedisError, AuthenticationError

# Configure module-level logger
logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """
    Creates a cached Redis client for baseline snapshots.

    Reads configuration from environment variables:
    - REDIS_HOST: Hostname (default: localhost)
    - REDIS_PORT: Port (default: 6379)
    - REDIS_DB: Database index (default: 0)
    - REDIS_PASSWORD: Password (REQUIRED)

    Raises:
        ValueError: If REDIS_PASSWORD is missing; callers fall back to in-memory mode.
    """
    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", 6379))
    db = int(os.getenv("REDIS_DB", 0))
    password = os.getenv("REDIS_PASSWORD")

    if not password:
        logger.warning("REDIS_PASSWORD is not set, snapshot persistence unavailable")
        raise ValueError("REDIS_PASSWORD is required to enable snapshot persistence.")

    try:
        # Snapshots are small and infrequent; a handful of connections is plenty
        pool = redis.ConnectionPool(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
            max_connections=8,
            socket_timeout=2.0
        )

        client = redis.Redis(connection_pool=pool)

        # Health check: fail at startup rather than on the first save
        client.ping()
        logger.info(f"Connected to Redis at {host}:{port}/{db}")

        return client

    except AuthenticationError:
        logger.error("Redis authentication failed. Check REDIS_PASSWORD.")
        raise
    except RedisError as e:
        logger.error(f"Could not connect to Redis: {e}")
        raise
