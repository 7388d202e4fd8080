"""
Scheduling module for the followup engine

Contains components for scheduling and sending reminder followups:
- FollowupRecord: One scheduled re-contact attempt and its outcome
- FollowupStore / FollowupScheduler: Record storage and the due-queue
- FollowupEngine: Staged scheduling, the dispatch cycle, cancel/retry/expiry
- RQ Tasks: Periodic drivers run by the worker
"""

from .engine import FollowupEngine, compute_followup_offsets, retry_delay
from .memory import InMemoryFollowupScheduler, InMemoryFollowupStore
from .models import (
    FollowupProcessingResult,
    FollowupRecord,
    FollowupScheduleRequest,
    FollowupStage,
    FollowupStatus,
    FollowupType,
    ReminderPriority,
    ReminderType,
)
from .scheduler import FollowupScheduler, RedisFollowupScheduler
from .store import FollowupStore, RedisFollowupStore

__all__ = [
    "FollowupEngine",
    "compute_followup_offsets",
    "retry_delay",
    "InMemoryFollowupScheduler",
    "InMemoryFollowupStore",
    "FollowupProcessingResult",
    "FollowupRecord",
    "FollowupScheduleRequest",
    "FollowupStage",
    "FollowupStatus",
    "FollowupType",
    "ReminderPriority",
    "ReminderType",
    "FollowupScheduler",
    "RedisFollowupScheduler",
    "FollowupStore",
    "RedisFollowupStore",
]
