"""Convenience functions for creating Redis connections."""

import logging
from typing import Optional

import redis
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class RedisConnectionError(Exception):
    """Raised when a Redis connection cannot be established."""


@retry(wait=wait_exponential(multiplier=1, min=1, max=10), stop=stop_after_attempt(3))
def _create_client(
    redis_host: str, redis_port: int, password: Optional[str], db_number: int
) -> redis.Redis:
    """Attempt to create and ping a Redis client with retries."""
    client = redis.Redis(
        host=redis_host,
        port=redis_port,
        password=password,
        db=db_number,
        decode_responses=True,
        socket_timeout=5,
    )
    client.ping()
    return client


def _read_password(password_file: Optional[str]) -> Optional[str]:
    if not password_file:
        return None
    try:
        with open(password_file, "r", encoding="utf-8") as f:
            return f.read().strip()
    except OSError as e:
        raise RedisConnectionError(
            f"Redis password file not readable at {password_file}: {e}"
        ) from e


def get_redis_connection(
    host: str = "localhost",
    port: int = 6379,
    db_number: int = 0,
    password_file: Optional[str] = None,
) -> redis.Redis:
    """
    Create a Redis connection and verify it with a ping.

    Args:
        host: Redis hostname.
        port: Redis port.
        db_number: Redis database number to connect to.
        password_file: Optional file holding the Redis password.

    Raises:
        RedisConnectionError: If the connection cannot be established.
    """
    password = _read_password(password_file)
    try:
        client = _create_client(host, port, password, db_number)
    except RetryError as e:
        cause = e.last_attempt.exception()
        if isinstance(cause, redis.AuthenticationError):
            msg = f"Redis authentication failed for DB {db_number}. Check password."
        else:
            msg = f"Failed to connect to Redis at {host} on DB {db_number}: {cause}"
        logger.error(msg)
        raise RedisConnectionError(msg) from e
    logger.info(f"Successfully connected to Redis at {host} on DB {db_number}")
    return client
