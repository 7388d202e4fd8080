"""
Atomic Redis operations for the followup engine

Provides Lua scripts and lock helpers that keep multi-worker deployments
safe: conditional record writes (so a cancelled followup is never overwritten
as sent) and token-checked locks for single-flight drivers and per-record
claims.
"""
import logging
import uuid
from typing import Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger("redis-atomic")

# Lua script for a hash write guarded by the current status
CONDITIONAL_HASH_UPDATE_SCRIPT = """
-- KEYS[1] = record key
-- ARGV[1] = expected status ('' writes unconditionally)
-- ARGV[2] = ttl seconds
-- ARGV[3..] = field/value pairs
local current_status = redis.call('HGET', KEYS[1], 'status')

if ARGV[1] ~= '' and current_status ~= ARGV[1] then
    return 0  -- Status mismatch (or record missing)
end

redis.call('HSET', KEYS[1], unpack(ARGV, 3))
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
return 1
"""

# Lua script for releasing a lock only if we still own it
RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class AtomicRedisOperations:
    """
    Provides atomic Redis operations to prevent race conditions
    """

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize with an asyncio Redis client

        Args:
            redis_client: redis.asyncio client instance
        """
        self.redis = redis_client

        # Register Lua scripts
        self._conditional_update_script = self.redis.register_script(CONDITIONAL_HASH_UPDATE_SCRIPT)
        self._release_lock_script = self.redis.register_script(RELEASE_LOCK_SCRIPT)

    async def conditional_hash_update(
        self,
        key: str,
        mapping: Dict[str, str],
        ttl_seconds: int,
        expected_status: Optional[str] = None,
    ) -> bool:
        """
        Write a hash atomically, optionally only if its status matches

        Args:
            key: Redis hash key
            mapping: Field/value pairs to write
            ttl_seconds: Expiry to (re)apply after the write
            expected_status: Status the record must currently have

        Returns:
            True if written, False if the status did not match
        """
        args = [expected_status or "", ttl_seconds]
        for field_name, value in mapping.items():
            args.extend([field_name, value])

        result = await self._conditional_update_script(keys=[key], args=args)
        written = bool(result)
        if not written:
            logger.warning(f"Conditional update skipped for {key}: expected status {expected_status}")
        return written

    async def acquire_lock(self, lock_key: str, ttl_seconds: int) -> Optional[str]:
        """
        Try to take a lock with SET NX EX

        Returns:
            Ownership token if acquired, None if someone else holds it
        """
        token = uuid.uuid4().hex
        acquired = await self.redis.set(lock_key, token, nx=True, ex=ttl_seconds)
        if not acquired:
            logger.debug(f"Lock {lock_key} is held by another worker")
            return None
        return token

    async def release_lock(self, lock_key: str, token: str) -> bool:
        """Release a lock if the token still owns it"""
        released = await self._release_lock_script(keys=[lock_key], args=[token])
        if not released:
            logger.warning(f"Lock {lock_key} was not released (expired or taken over)")
        return bool(released)
