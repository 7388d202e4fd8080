"""
FollowupScheduler - due-queue of followup ids ordered by send time

Key layout (prefix defaults to "followup"):
    {prefix}:schedule           zset   followup id scored by epoch millis
    {prefix}:claim:{id}         string per-record claim token (SET NX EX)
    {prefix}:lock:{driver}      string single-flight driver lock token
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from config.settings import EngineSettings
from shared.exceptions import TransientStoreError
from utils.redis_atomic import AtomicRedisOperations
from utils.time_utils import from_epoch_millis, now_utc, to_epoch_millis

logger = logging.getLogger("followup-scheduler")


class FollowupScheduler(ABC):
    """Due-queue interface; membership never implies a status"""

    @abstractmethod
    async def enqueue(self, followup_id: str, due_at: datetime) -> None:
        pass

    @abstractmethod
    async def due_now(self, limit: int = 100, now: Optional[datetime] = None) -> List[str]:
        """Ids with due time <= now, oldest first. Does not remove them."""

    @abstractmethod
    async def dequeue(self, followup_id: str) -> None:
        """Remove an id from the queue; removing an absent id is a no-op"""

    @abstractmethod
    async def due_time(self, followup_id: str) -> Optional[datetime]:
        pass

    @abstractmethod
    async def pending_count(self) -> int:
        pass

    @abstractmethod
    async def claim(self, followup_id: str, ttl_seconds: int) -> Optional[str]:
        """Claim one record for dispatch; returns a token or None if already claimed"""

    @abstractmethod
    async def release_claim(self, followup_id: str, token: str) -> None:
        pass

    @abstractmethod
    async def acquire_driver_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        """Single-flight lock for a periodic driver; returns a token or None"""

    @abstractmethod
    async def release_driver_lock(self, name: str, token: str) -> bool:
        pass


class RedisFollowupScheduler(FollowupScheduler):
    """Redis sorted-set due-queue with SET NX EX claims and locks"""

    def __init__(
        self,
        redis_client: redis.Redis,
        settings: Optional[EngineSettings] = None,
        atomic_ops: Optional[AtomicRedisOperations] = None,
    ):
        self.redis = redis_client
        self.settings = settings or EngineSettings()
        self.prefix = self.settings.key_prefix
        self.atomic_ops = atomic_ops or AtomicRedisOperations(redis_client)

    @property
    def _schedule_key(self) -> str:
        return f"{self.prefix}:schedule"

    def _claim_key(self, followup_id: str) -> str:
        return f"{self.prefix}:claim:{followup_id}"

    def _lock_key(self, name: str) -> str:
        return f"{self.prefix}:lock:{name}"

    async def enqueue(self, followup_id: str, due_at: datetime) -> None:
        try:
            await self.redis.zadd(self._schedule_key, {followup_id: to_epoch_millis(due_at)})
        except RedisError as e:
            raise TransientStoreError("enqueue", e) from e
        logger.debug(f"Enqueued followup {followup_id} for {due_at.isoformat()}")

    async def due_now(self, limit: int = 100, now: Optional[datetime] = None) -> List[str]:
        cutoff = to_epoch_millis(now or now_utc())
        try:
            return list(await self.redis.zrangebyscore(self._schedule_key, 0, cutoff, start=0, num=limit))
        except RedisError as e:
            raise TransientStoreError("due_now", e) from e

    async def dequeue(self, followup_id: str) -> None:
        try:
            await self.redis.zrem(self._schedule_key, followup_id)
        except RedisError as e:
            raise TransientStoreError("dequeue", e) from e

    async def due_time(self, followup_id: str) -> Optional[datetime]:
        try:
            score = await self.redis.zscore(self._schedule_key, followup_id)
        except RedisError as e:
            raise TransientStoreError("due_time", e) from e
        return from_epoch_millis(score) if score is not None else None

    async def pending_count(self) -> int:
        try:
            return int(await self.redis.zcard(self._schedule_key))
        except RedisError as e:
            raise TransientStoreError("pending_count", e) from e

    async def claim(self, followup_id: str, ttl_seconds: int) -> Optional[str]:
        try:
            return await self.atomic_ops.acquire_lock(self._claim_key(followup_id), ttl_seconds)
        except RedisError as e:
            raise TransientStoreError("claim", e) from e

    async def release_claim(self, followup_id: str, token: str) -> None:
        try:
            await self.atomic_ops.release_lock(self._claim_key(followup_id), token)
        except RedisError as e:
            raise TransientStoreError("release_claim", e) from e

    async def acquire_driver_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        try:
            return await self.atomic_ops.acquire_lock(self._lock_key(name), ttl_seconds)
        except RedisError as e:
            raise TransientStoreError("acquire_driver_lock", e) from e

    async def release_driver_lock(self, name: str, token: str) -> bool:
        try:
            return await self.atomic_ops.release_lock(self._lock_key(name), token)
        except RedisError as e:
            raise TransientStoreError("release_driver_lock", e) from e
