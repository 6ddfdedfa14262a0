"""
Redis client singleton for pub/sub notification fan-out.

New notifications are published as JSON on a pub/sub channel; the WebSocket
gateway subscribes to it and pushes each payload to the connected user.
Publishing is fire-and-forget: the notification row is the source of truth.
"""

import json
import logging
from functools import lru_cache
from typing import Any

import redis.asyncio as redis
from redis import ConnectionError as RedisConnectionError

from shared.config import get_settings

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Raised when a message could not be published to Redis."""
    pass


@lru_cache
def get_redis_client() -> "redis.Redis[str]":
    """
    Get cached Redis client instance.

    Configured with a bounded connection pool, retry on timeout and
    periodic health checks.

    Returns:
        Redis async client
    """
    settings = get_settings()

    client = redis.from_url(
        settings.REDIS_URL,
        max_connections=20,
        decode_responses=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )

    logger.info(
        f"Redis client initialized: {settings.REDIS_URL} "
        f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
    )
    return client


async def publish_to_channel(channel: str, message: dict[str, Any]) -> int:
    """
    Publish a message to a Redis pub/sub channel.

    Args:
        channel: Channel name
        message: Message dict to publish (will be JSON-serialized)

    Returns:
        Number of subscribers that received the message

    Raises:
        PublishError: If Redis is unreachable or the publish fails
    """
    client = get_redis_client()

    try:
        json_message = json.dumps(message, default=str)
        receivers = await client.publish(channel, json_message)
        logger.debug(f"Message published to channel '{channel}': {json_message[:100]}")
        return receivers

    except RedisConnectionError as e:
        logger.error(f"Redis connection error while publishing to '{channel}': {e}")
        raise PublishError(f"Redis connection failed: {e}") from e

    except Exception as e:
        logger.error(f"Unexpected error publishing to Redis channel '{channel}': {e}")
        raise PublishError(str(e)) from e


async def close_redis_client() -> None:
    """
    Close Redis connection gracefully.

    Note:
        Should be called during application shutdown.
    """
    if get_redis_client.cache_info().currsize == 0:
        return
    client = get_redis_client()
    await client.aclose()
    get_redis_client.cache_clear()
    logger.info("Redis client closed")
