"""
Redis connections for the followup engine

The engine services use redis.asyncio; RQ workers, rq-scheduler and the
operator CLI health check use the synchronous client. REDIS_URL, when set,
takes precedence over the individual REDIS_* settings.
"""
import logging
import os
from typing import Any, Dict, Optional

import redis
import redis.asyncio as aioredis

logger = logging.getLogger("redis-config")


def get_redis_config() -> Dict[str, Any]:
    """Connection keyword arguments from REDIS_* environment variables"""
    config = {
        'host': os.getenv('REDIS_HOST', 'localhost'),
        'port': int(os.getenv('REDIS_PORT', '6379')),
        'db': int(os.getenv('REDIS_DB', '0')),
        'password': os.getenv('REDIS_PASSWORD'),
        'socket_timeout': int(os.getenv('REDIS_SOCKET_TIMEOUT', '5')),
        'socket_connect_timeout': int(os.getenv('REDIS_CONNECT_TIMEOUT', '5')),
        'decode_responses': True,
    }
    return {k: v for k, v in config.items() if v is not None}


def get_redis_url() -> str:
    """REDIS_URL, or a redis:// URL assembled from the REDIS_* settings"""
    url = os.getenv('REDIS_URL')
    if url:
        return url

    config = get_redis_config()
    auth = f":{config['password']}@" if config.get('password') else ""
    return f"redis://{auth}{config['host']}:{config['port']}/{config['db']}"


def _timeouts() -> Dict[str, Any]:
    config = get_redis_config()
    return {
        'socket_timeout': config['socket_timeout'],
        'socket_connect_timeout': config['socket_connect_timeout'],
        'decode_responses': True,
    }


def create_redis_connection(url: Optional[str] = None) -> redis.Redis:
    """Synchronous client (RQ, rq-scheduler, CLI)"""
    url = url or os.getenv('REDIS_URL')
    if url:
        return redis.Redis.from_url(url, **_timeouts())
    return redis.Redis(**get_redis_config())


def create_async_redis_connection(url: Optional[str] = None) -> aioredis.Redis:
    """asyncio client for the engine services"""
    url = url or os.getenv('REDIS_URL')
    if url:
        return aioredis.Redis.from_url(url, **_timeouts())
    return aioredis.Redis(**get_redis_config())


def ping_redis() -> bool:
    """True if the configured Redis answers PING"""
    client = create_redis_connection()
    try:
        return bool(client.ping())
    except redis.RedisError as e:
        logger.error(f"Redis connection to {get_redis_url()} failed: {e}")
        return False
    finally:
        client.close()
