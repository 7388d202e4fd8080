"""
Configuration module for the followup engine
"""

from .redis import (
    create_async_redis_connection,
    create_redis_connection,
    get_redis_url,
    ping_redis,
)
from .settings import EngineSettings

__all__ = [
    'create_async_redis_connection',
    'create_redis_connection',
    'get_redis_url',
    'ping_redis',
    'EngineSettings',
]
