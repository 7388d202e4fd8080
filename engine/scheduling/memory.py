"""In-memory implementations of the followup store and scheduler.

Records are kept in their Redis hash encoding so a stored record behaves
exactly like one read back from Redis (no shared mutable objects). Used by
the test suite and the CLI's --memory mode:
- State is lost on restart
- Cannot be shared between workers
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from config.settings import EngineSettings
from utils.time_utils import now_utc

from .models import FollowupRecord
from .scheduler import FollowupScheduler
from .store import FollowupStore

logger = logging.getLogger("followup-store")


class InMemoryFollowupStore(FollowupStore):
    """Dict-backed FollowupStore honouring the record TTL"""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()
        self._records: Dict[str, Tuple[Dict[str, str], datetime]] = {}
        self._patient_index: Dict[str, Dict[str, str]] = {}
        self._reminder_index: Dict[str, Set[str]] = {}
        self._awaiting: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    def _expires_at(self) -> datetime:
        return now_utc() + self.settings.followup_ttl

    async def create(self, record: FollowupRecord) -> None:
        async with self._lock:
            self._records[record.id] = (record.to_redis_hash(), self._expires_at())
            self._patient_index.setdefault(record.patient_id, {})[record.id] = record.scheduled_at.isoformat()
            self._reminder_index.setdefault(record.reminder_id, set()).add(record.id)
        logger.info(f"Stored followup {record.id} ({record.followup_type.value}) for patient {record.patient_id}")

    async def get(self, followup_id: str) -> Optional[FollowupRecord]:
        async with self._lock:
            entry = self._records.get(followup_id)
            if entry is None:
                return None
            data, expires_at = entry
            if expires_at <= now_utc():
                del self._records[followup_id]
                return None
            return FollowupRecord.from_redis_hash(dict(data))

    async def update(self, record: FollowupRecord, expected_status: Optional[str] = None) -> bool:
        async with self._lock:
            if expected_status:
                entry = self._records.get(record.id)
                if entry is None or entry[0].get("status") != expected_status:
                    logger.warning(f"Conditional update skipped for {record.id}: expected status {expected_status}")
                    return False
            self._records[record.id] = (record.to_redis_hash(), self._expires_at())
            return True

    async def patient_followup_ids(self, patient_id: str) -> List[str]:
        async with self._lock:
            return list(self._patient_index.get(patient_id, {}))

    async def reminder_followup_ids(self, reminder_id: str) -> List[str]:
        async with self._lock:
            return list(self._reminder_index.get(reminder_id, set()))

    async def remove_from_reminder_index(self, reminder_id: str, followup_id: str) -> None:
        async with self._lock:
            self._reminder_index.get(reminder_id, set()).discard(followup_id)

    async def clear_reminder_index(self, reminder_id: str) -> None:
        async with self._lock:
            self._reminder_index.pop(reminder_id, None)

    async def all_followup_ids(self) -> List[str]:
        async with self._lock:
            current = now_utc()
            return [fid for fid, (_, expires_at) in self._records.items() if expires_at > current]

    async def mark_awaiting(self, followup_id: str, deadline: datetime) -> None:
        async with self._lock:
            self._awaiting[followup_id] = deadline

    async def clear_awaiting(self, followup_id: str) -> None:
        async with self._lock:
            self._awaiting.pop(followup_id, None)

    async def awaiting_due(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        cutoff = now or now_utc()
        async with self._lock:
            due = sorted(
                (deadline, fid) for fid, deadline in self._awaiting.items() if deadline <= cutoff
            )
            return [fid for _, fid in due[:limit]]


class InMemoryFollowupScheduler(FollowupScheduler):
    """Dict-backed due-queue with expiring claim and lock tokens"""

    def __init__(self):
        self._queue: Dict[str, datetime] = {}
        self._locks: Dict[str, Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, followup_id: str, due_at: datetime) -> None:
        async with self._lock:
            self._queue[followup_id] = due_at

    async def due_now(self, limit: int = 100, now: Optional[datetime] = None) -> List[str]:
        cutoff = now or now_utc()
        async with self._lock:
            due = sorted((due_at, fid) for fid, due_at in self._queue.items() if due_at <= cutoff)
            return [fid for _, fid in due[:limit]]

    async def dequeue(self, followup_id: str) -> None:
        async with self._lock:
            self._queue.pop(followup_id, None)

    async def due_time(self, followup_id: str) -> Optional[datetime]:
        async with self._lock:
            return self._queue.get(followup_id)

    async def pending_count(self) -> int:
        async with self._lock:
            return len(self._queue)

    async def _acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        async with self._lock:
            current = now_utc()
            held = self._locks.get(key)
            if held and held[1] > current:
                return None
            token = uuid.uuid4().hex
            self._locks[key] = (token, current + timedelta(seconds=ttl_seconds))
            return token

    async def _release(self, key: str, token: str) -> bool:
        async with self._lock:
            held = self._locks.get(key)
            if not held or held[0] != token:
                logger.warning(f"Lock {key} was not released (expired or taken over)")
                return False
            del self._locks[key]
            return True

    async def claim(self, followup_id: str, ttl_seconds: int) -> Optional[str]:
        return await self._acquire(f"claim:{followup_id}", ttl_seconds)

    async def release_claim(self, followup_id: str, token: str) -> None:
        await self._release(f"claim:{followup_id}", token)

    async def acquire_driver_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        return await self._acquire(f"lock:{name}", ttl_seconds)

    async def release_driver_lock(self, name: str, token: str) -> bool:
        return await self._release(f"lock:{name}", token)
