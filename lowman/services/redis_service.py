"""
Redis service providing a centralized Redis client singleton.

Outbound engine events are published on a Redis channel for the notification
collaborator. Redis connections are stateless with built-in connection
pooling, so a process-wide client is appropriate; nothing read from Redis is
used as a source of truth.

Usage:
    from lowman.services.redis_service import redis_publish

    delivered = await redis_publish("lowman:notifications", payload_json)
"""

import logging
import os
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Redis configuration from environment
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Connection settings
SOCKET_CONNECT_TIMEOUT = 2
SOCKET_TIMEOUT = 5
RETRY_ON_TIMEOUT = True

# Global Redis client (singleton)
_redis_client: Optional[Redis] = None
_connection_tested: bool = False


async def get_redis_client() -> Optional[Redis]:
    """
    Get or create the Redis client singleton.

    Returns:
        Redis client or None if the connection fails
    """
    global _redis_client, _connection_tested

    # Return existing client if connection was already tested
    if _redis_client is not None and _connection_tested:
        try:
            await _redis_client.ping()
            return _redis_client
        except Exception as e:
            logger.warning(f"Redis connection lost, recreating client: {e}")
            await close_redis_connection()

    try:
        client_kwargs = {
            "host": REDIS_HOST,
            "port": REDIS_PORT,
            "db": REDIS_DB,
            "decode_responses": True,
            "socket_connect_timeout": SOCKET_CONNECT_TIMEOUT,
            "socket_timeout": SOCKET_TIMEOUT,
            "retry_on_timeout": RETRY_ON_TIMEOUT,
        }

        if REDIS_PASSWORD:
            client_kwargs["password"] = REDIS_PASSWORD

        _redis_client = Redis(**client_kwargs)

        # Test connection
        await _redis_client.ping()
        _connection_tested = True
        logger.info(f"Connected to Redis at {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")
        return _redis_client

    except Exception as e:
        logger.warning(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}: {e}")
        _redis_client = None
        _connection_tested = False
        return None


async def close_redis_connection() -> None:
    """
    Close the Redis connection.

    Called during application shutdown to cleanly close the connection.
    """
    global _redis_client, _connection_tested

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Closed Redis connection")
        except Exception as e:
            logger.warning(f"Error closing Redis connection: {e}")
        finally:
            _redis_client = None
            _connection_tested = False


async def redis_publish(channel: str, message: str) -> bool:
    """
    Publish a message on a Redis channel.

    Args:
        channel: Channel name
        message: Serialized message

    Returns:
        True if Redis accepted the message, False if Redis is unavailable
    """
    try:
        client = await get_redis_client()
        if client:
            await client.publish(channel, message)
            return True
    except Exception as e:
        logger.warning(f"Redis PUBLISH error on channel {channel}: {e}")
    return False
