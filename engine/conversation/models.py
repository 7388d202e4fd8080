"""
Data models for per-patient conversation state
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import json
import uuid

from utils.time_utils import now_utc, parse_iso_to_utc, parse_optional_iso


class ConversationContext(Enum):
    """What the system believes it is currently discussing with the patient"""
    VERIFICATION = "verification"
    REMINDER_CONFIRMATION = "reminder_confirmation"
    GENERAL_INQUIRY = "general_inquiry"
    EMERGENCY = "emergency"


class ExpectedResponseType(Enum):
    YES_NO = "yes_no"
    CONFIRMATION = "confirmation"
    TEXT = "text"
    NUMBER = "number"


class RelatedEntityType(Enum):
    FOLLOWUP = "followup"
    REMINDER = "reminder"
    VERIFICATION = "verification"
    GENERAL = "general"


class MessageDirection(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(Enum):
    VERIFICATION = "verification"
    REMINDER = "reminder"
    CONFIRMATION = "confirmation"
    GENERAL = "general"


def _enum_or_none(enum_cls, value: Optional[str]):
    return enum_cls(value) if value else None


CONTEXT_FIELDS = (
    "current_context",
    "expected_response_type",
    "related_entity_id",
    "related_entity_type",
    "state_data",
    "is_active",
    "updated_at",
)


@dataclass
class ConversationState:
    """One context window for a patient; the latest active one by updated_at wins"""
    patient_id: str
    phone_number: str
    expires_at: datetime
    id: str = field(default_factory=lambda: f"conv_{uuid.uuid4().hex}")
    current_context: ConversationContext = ConversationContext.GENERAL_INQUIRY
    expected_response_type: Optional[ExpectedResponseType] = None
    related_entity_id: Optional[str] = None
    related_entity_type: Optional[RelatedEntityType] = None
    state_data: Dict[str, Any] = field(default_factory=dict)
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    message_count: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        return self.expires_at < (at or now_utc())

    def is_live(self, at: Optional[datetime] = None) -> bool:
        """Active and not yet expired"""
        return self.is_active and not self.is_expired(at)

    def to_redis_hash(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "phone_number": self.phone_number,
            "current_context": self.current_context.value,
            "expected_response_type": self.expected_response_type.value if self.expected_response_type else "",
            "related_entity_id": self.related_entity_id or "",
            "related_entity_type": self.related_entity_type.value if self.related_entity_type else "",
            "state_data": json.dumps(self.state_data),
            "last_message": self.last_message or "",
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else "",
            "message_count": str(self.message_count),
            "is_active": "1" if self.is_active else "0",
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def to_context_hash(self) -> Dict[str, str]:
        """Fields owned by context changes; message counters and expiry belong to append_message"""
        full = self.to_redis_hash()
        return {name: full[name] for name in CONTEXT_FIELDS}

    @classmethod
    def from_redis_hash(cls, data: Dict[str, str]) -> "ConversationState":
        return cls(
            id=data["id"],
            patient_id=data.get("patient_id", ""),
            phone_number=data.get("phone_number", ""),
            current_context=ConversationContext(data.get("current_context") or "general_inquiry"),
            expected_response_type=_enum_or_none(ExpectedResponseType, data.get("expected_response_type")),
            related_entity_id=data.get("related_entity_id") or None,
            related_entity_type=_enum_or_none(RelatedEntityType, data.get("related_entity_type")),
            state_data=json.loads(data.get("state_data") or "{}"),
            last_message=data.get("last_message") or None,
            last_message_at=parse_optional_iso(data.get("last_message_at")),
            message_count=int(data.get("message_count") or 0),
            is_active=data.get("is_active") == "1",
            expires_at=parse_iso_to_utc(data["expires_at"]),
            created_at=parse_iso_to_utc(data["created_at"]),
            updated_at=parse_iso_to_utc(data["updated_at"]),
        )


@dataclass(frozen=True)
class ConversationMessage:
    """Append-only history entry"""
    conversation_state_id: str
    message: str
    direction: MessageDirection
    message_type: MessageType = MessageType.GENERAL
    intent: Optional[str] = None
    confidence: Optional[float] = None
    processed_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex}")
    created_at: datetime = field(default_factory=now_utc)

    def to_json(self) -> str:
        return json.dumps({
            "id": self.id,
            "conversation_state_id": self.conversation_state_id,
            "message": self.message,
            "direction": self.direction.value,
            "message_type": self.message_type.value,
            "intent": self.intent,
            "confidence": self.confidence,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat(),
        })

    @classmethod
    def from_json(cls, raw: str) -> "ConversationMessage":
        data = json.loads(raw)
        return cls(
            id=data["id"],
            conversation_state_id=data["conversation_state_id"],
            message=data["message"],
            direction=MessageDirection(data["direction"]),
            message_type=MessageType(data.get("message_type") or "general"),
            intent=data.get("intent"),
            confidence=data.get("confidence"),
            processed_at=parse_optional_iso(data.get("processed_at")),
            created_at=parse_iso_to_utc(data["created_at"]),
        )
