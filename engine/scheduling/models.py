"""
Data models for the followup scheduling system
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
import json
import uuid

from shared.exceptions import InvalidStatusTransitionError
from utils.time_utils import now_utc, parse_iso_to_utc, parse_optional_iso


class FollowupStatus(Enum):
    """Lifecycle status of a followup record"""
    PENDING = "pending"
    SENT = "sent"
    RESPONDED = "responded"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Pending or sent: still waiting on the driver or the patient"""
        return self in ACTIVE_STATUSES


class FollowupType(Enum):
    """Which cadence slot a followup fills"""
    REMINDER_15MIN = "REMINDER_15MIN"
    REMINDER_2H = "REMINDER_2H"
    REMINDER_24H = "REMINDER_24H"
    GENERAL = "GENERAL"


class FollowupStage(Enum):
    """Position of a followup in the per-reminder conversation"""
    INITIAL = "INITIAL"
    FOLLOWUP_15MIN = "FOLLOWUP_15MIN"
    FOLLOWUP_2H = "FOLLOWUP_2H"
    FOLLOWUP_24H = "FOLLOWUP_24H"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class ReminderType(Enum):
    MEDICATION = "MEDICATION"
    APPOINTMENT = "APPOINTMENT"
    GENERAL = "GENERAL"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "ReminderType":
        """Convert string to ReminderType, falling back to MEDICATION"""
        if not value:
            return cls.MEDICATION
        try:
            return cls(value.upper())
        except ValueError:
            return cls.MEDICATION


class ReminderPriority(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "ReminderPriority":
        if not value:
            return cls.MEDIUM
        try:
            return cls(value.upper())
        except ValueError:
            return cls.MEDIUM


TERMINAL_STATUSES: FrozenSet[FollowupStatus] = frozenset({
    FollowupStatus.CONFIRMED,
    FollowupStatus.CANCELLED,
    FollowupStatus.EXPIRED,
})

ACTIVE_STATUSES: FrozenSet[FollowupStatus] = frozenset({
    FollowupStatus.PENDING,
    FollowupStatus.SENT,
})

# Key: current status, Value: statuses reachable from it.
# FAILED -> PENDING is only used by the manual retry path.
VALID_TRANSITIONS: Dict[FollowupStatus, FrozenSet[FollowupStatus]] = {
    FollowupStatus.PENDING: frozenset({
        FollowupStatus.SENT,
        FollowupStatus.FAILED,
        FollowupStatus.RESPONDED,
        FollowupStatus.CONFIRMED,
        FollowupStatus.CANCELLED,
        FollowupStatus.EXPIRED,
    }),
    FollowupStatus.SENT: frozenset({
        FollowupStatus.RESPONDED,
        FollowupStatus.CONFIRMED,
        FollowupStatus.CANCELLED,
        FollowupStatus.EXPIRED,
    }),
    FollowupStatus.RESPONDED: frozenset({
        FollowupStatus.CONFIRMED,
        FollowupStatus.EXPIRED,
    }),
    FollowupStatus.FAILED: frozenset({
        FollowupStatus.PENDING,
        FollowupStatus.CANCELLED,
        FollowupStatus.EXPIRED,
    }),
    FollowupStatus.CONFIRMED: frozenset(),
    FollowupStatus.CANCELLED: frozenset(),
    FollowupStatus.EXPIRED: frozenset(),
}


@dataclass
class FollowupRecord:
    """
    One scheduled re-contact attempt tied to a previously sent reminder.

    scheduled_at is fixed once the record is built; status only moves along
    VALID_TRANSITIONS (use transition_to rather than assigning status).
    """
    # Core identification
    id: str = field(default_factory=lambda: f"followup_{uuid.uuid4().hex}")
    reminder_id: str = ""
    patient_id: str = ""
    phone_number: str = ""
    patient_name: str = ""

    # Classification
    followup_type: FollowupType = FollowupType.GENERAL
    stage: FollowupStage = FollowupStage.INITIAL

    # Timing
    scheduled_at: datetime = field(default_factory=now_utc)
    sent_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    # Content echo of the parent reminder
    reminder_type: ReminderType = ReminderType.MEDICATION
    reminder_title: str = ""
    reminder_message: str = ""
    priority: ReminderPriority = ReminderPriority.MEDIUM

    # Outcome
    status: FollowupStatus = FollowupStatus.PENDING
    response: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    message_id: Optional[str] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "scheduled_at" and "scheduled_at" in self.__dict__:
            raise AttributeError("scheduled_at cannot be changed after creation")
        super().__setattr__(name, value)

    def can_transition_to(self, new_status: FollowupStatus) -> bool:
        return new_status in VALID_TRANSITIONS[self.status]

    def transition_to(self, new_status: FollowupStatus) -> None:
        """Move to new_status, refusing regressions and terminal exits"""
        if not self.can_transition_to(new_status):
            raise InvalidStatusTransitionError(
                self.id,
                self.status.value,
                new_status.value,
                [s.value for s in VALID_TRANSITIONS[self.status]],
            )
        self.status = new_status
        self.touch()

    def touch(self) -> None:
        self.updated_at = now_utc()

    def can_retry(self) -> bool:
        """Check if a failed followup may be manually retried"""
        return self.status == FollowupStatus.FAILED and self.retry_count < self.max_retries

    def to_redis_hash(self) -> Dict[str, str]:
        """Flatten to string fields for a Redis hash"""
        return {
            "id": self.id,
            "reminder_id": self.reminder_id,
            "patient_id": self.patient_id,
            "phone_number": self.phone_number,
            "patient_name": self.patient_name,
            "followup_type": self.followup_type.value,
            "stage": self.stage.value,
            "scheduled_at": self.scheduled_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else "",
            "responded_at": self.responded_at.isoformat() if self.responded_at else "",
            "reminder_type": self.reminder_type.value,
            "reminder_title": self.reminder_title,
            "reminder_message": self.reminder_message,
            "priority": self.priority.value,
            "status": self.status.value,
            "response": self.response or "",
            "retry_count": str(self.retry_count),
            "max_retries": str(self.max_retries),
            "error": self.error or "",
            "message_id": self.message_id or "",
            "metadata": json.dumps(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_redis_hash(cls, data: Dict[str, str]) -> "FollowupRecord":
        """Rebuild a record from the string fields written by to_redis_hash"""
        metadata = data.get("metadata") or "{}"
        return cls(
            id=data["id"],
            reminder_id=data.get("reminder_id", ""),
            patient_id=data.get("patient_id", ""),
            phone_number=data.get("phone_number", ""),
            patient_name=data.get("patient_name", ""),
            followup_type=FollowupType(data.get("followup_type") or FollowupType.GENERAL.value),
            stage=FollowupStage(data.get("stage") or FollowupStage.INITIAL.value),
            scheduled_at=parse_iso_to_utc(data["scheduled_at"]),
            sent_at=parse_optional_iso(data.get("sent_at")),
            responded_at=parse_optional_iso(data.get("responded_at")),
            reminder_type=ReminderType.from_string(data.get("reminder_type")),
            reminder_title=data.get("reminder_title", ""),
            reminder_message=data.get("reminder_message", ""),
            priority=ReminderPriority.from_string(data.get("priority")),
            status=FollowupStatus(data.get("status") or FollowupStatus.PENDING.value),
            response=data.get("response") or None,
            retry_count=int(data.get("retry_count") or 0),
            max_retries=int(data.get("max_retries") or 3),
            error=data.get("error") or None,
            message_id=data.get("message_id") or None,
            metadata=json.loads(metadata),
            created_at=parse_iso_to_utc(data["created_at"]),
            updated_at=parse_iso_to_utc(data["updated_at"]),
        )


@dataclass
class FollowupScheduleRequest:
    """Input for scheduling the staged followups of one sent reminder"""
    patient_id: str
    reminder_id: str
    phone_number: str
    patient_name: str
    reminder_type: ReminderType = ReminderType.MEDICATION
    reminder_title: str = ""
    reminder_message: str = ""
    priority: ReminderPriority = ReminderPriority.MEDIUM
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FollowupProcessingResult:
    """Outcome of one due-queue item in a driver cycle"""
    followup_id: str
    processed: bool
    status: Optional[FollowupStatus] = None
    sent_message_id: Optional[str] = None
    error: Optional[str] = None
