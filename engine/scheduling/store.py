"""
FollowupStore - durable storage for followup records and their indexes

Key layout (prefix defaults to "followup"):
    {prefix}:data:{id}          hash   one FollowupRecord
    {prefix}:patient:{pid}      hash   followup id -> scheduled_at ISO
    {prefix}:reminder:{rid}     hash   followup id -> "1"
    {prefix}:awaiting           zset   sent followups scored by response deadline

Records and both indexes share the same TTL (7 days by default).
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
from utils.time_utils import now_utc, to_epoch_millis

from .models import FollowupRecord

logger = logging.getLogger("followup-store")


class FollowupStore(ABC):
    """Storage interface used by the engine and the linker"""

    @abstractmethod
    async def create(self, record: FollowupRecord) -> None:
        """Persist a new record and index it by patient and parent reminder"""

    @abstractmethod
    async def get(self, followup_id: str) -> Optional[FollowupRecord]:
        """Return the record, or None if it does not exist (or has expired)"""

    @abstractmethod
    async def update(self, record: FollowupRecord, expected_status: Optional[str] = None) -> bool:
        """
        Rewrite a record and refresh its TTL.

        When expected_status is given the write only happens if the stored
        status still matches; returns False otherwise.
        """

    @abstractmethod
    async def patient_followup_ids(self, patient_id: str) -> List[str]:
        pass

    @abstractmethod
    async def reminder_followup_ids(self, reminder_id: str) -> List[str]:
        pass

    @abstractmethod
    async def remove_from_reminder_index(self, reminder_id: str, followup_id: str) -> None:
        pass

    @abstractmethod
    async def clear_reminder_index(self, reminder_id: str) -> None:
        pass

    @abstractmethod
    async def all_followup_ids(self) -> List[str]:
        """Every stored followup id (full scan, used for global stats)"""

    @abstractmethod
    async def mark_awaiting(self, followup_id: str, deadline: datetime) -> None:
        """Track a sent followup until its response deadline"""

    @abstractmethod
    async def clear_awaiting(self, followup_id: str) -> None:
        pass

    @abstractmethod
    async def awaiting_due(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Sent followups whose response deadline is at or before now"""


class RedisFollowupStore(FollowupStore):
    """
    Redis implementation of FollowupStore (redis.asyncio).

    Every redis-py error is re-raised as TransientStoreError.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        settings: Optional[EngineSettings] = None,
        atomic_ops: Optional[AtomicRedisOperations] = None,
    ):
        self.redis = redis_client
        self.settings = settings or EngineSettings()
        self.prefix = self.settings.key_prefix
        self.ttl_seconds = int(self.settings.followup_ttl.total_seconds())
        self.atomic_ops = atomic_ops or AtomicRedisOperations(redis_client)

    def _data_key(self, followup_id: str) -> str:
        return f"{self.prefix}:data:{followup_id}"

    def _patient_key(self, patient_id: str) -> str:
        return f"{self.prefix}:patient:{patient_id}"

    def _reminder_key(self, reminder_id: str) -> str:
        return f"{self.prefix}:reminder:{reminder_id}"

    @property
    def _awaiting_key(self) -> str:
        return f"{self.prefix}:awaiting"

    async def create(self, record: FollowupRecord) -> None:
        data_key = self._data_key(record.id)
        patient_key = self._patient_key(record.patient_id)
        reminder_key = self._reminder_key(record.reminder_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(data_key, mapping=record.to_redis_hash())
                pipe.expire(data_key, self.ttl_seconds)
                pipe.hset(patient_key, record.id, record.scheduled_at.isoformat())
                pipe.expire(patient_key, self.ttl_seconds)
                pipe.hset(reminder_key, record.id, "1")
                pipe.expire(reminder_key, self.ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            raise TransientStoreError("create", e) from e

        logger.info(f"Stored followup {record.id} ({record.followup_type.value}) for patient {record.patient_id}")

    async def get(self, followup_id: str) -> Optional[FollowupRecord]:
        try:
            data = await self.redis.hgetall(self._data_key(followup_id))
        except RedisError as e:
            raise TransientStoreError("get", e) from e

        if not data:
            return None

        try:
            return FollowupRecord.from_redis_hash(data)
        except (KeyError, ValueError) as e:
            logger.error(f"Error deserializing followup {followup_id}: {e}")
            return None

    async def update(self, record: FollowupRecord, expected_status: Optional[str] = None) -> bool:
        try:
            return await self.atomic_ops.conditional_hash_update(
                self._data_key(record.id),
                record.to_redis_hash(),
                self.ttl_seconds,
                expected_status=expected_status,
            )
        except RedisError as e:
            raise TransientStoreError("update", e) from e

    async def patient_followup_ids(self, patient_id: str) -> List[str]:
        try:
            return list(await self.redis.hkeys(self._patient_key(patient_id)))
        except RedisError as e:
            raise TransientStoreError("patient_followup_ids", e) from e

    async def reminder_followup_ids(self, reminder_id: str) -> List[str]:
        try:
            return list(await self.redis.hkeys(self._reminder_key(reminder_id)))
        except RedisError as e:
            raise TransientStoreError("reminder_followup_ids", e) from e

    async def remove_from_reminder_index(self, reminder_id: str, followup_id: str) -> None:
        try:
            await self.redis.hdel(self._reminder_key(reminder_id), followup_id)
        except RedisError as e:
            raise TransientStoreError("remove_from_reminder_index", e) from e

    async def clear_reminder_index(self, reminder_id: str) -> None:
        try:
            await self.redis.delete(self._reminder_key(reminder_id))
        except RedisError as e:
            raise TransientStoreError("clear_reminder_index", e) from e

    async def all_followup_ids(self) -> List[str]:
        data_prefix = f"{self.prefix}:data:"
        followup_ids = []
        try:
            async for key in self.redis.scan_iter(match=f"{data_prefix}*", count=500):
                followup_ids.append(key[len(data_prefix):])
        except RedisError as e:
            raise TransientStoreError("all_followup_ids", e) from e
        return followup_ids

    async def mark_awaiting(self, followup_id: str, deadline: datetime) -> None:
        try:
            await self.redis.zadd(self._awaiting_key, {followup_id: to_epoch_millis(deadline)})
        except RedisError as e:
            raise TransientStoreError("mark_awaiting", e) from e

    async def clear_awaiting(self, followup_id: str) -> None:
        try:
            await self.redis.zrem(self._awaiting_key, followup_id)
        except RedisError as e:
            raise TransientStoreError("clear_awaiting", e) from e

    async def awaiting_due(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        cutoff = to_epoch_millis(now or now_utc())
        try:
            return list(await self.redis.zrangebyscore(self._awaiting_key, 0, cutoff, start=0, num=limit))
        except RedisError as e:
            raise TransientStoreError("awaiting_due", e) from e
