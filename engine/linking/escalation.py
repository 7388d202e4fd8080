"""
Operator escalations raised by patient replies

Every escalation is kept in a bounded, newest-first log (the human-review
queue) and, when an operator phone is configured, also pushed to that
operator over the messaging channel.
"""
import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from config.settings import EngineSettings
from messaging.adapter import MessagingAdapter
from shared.exceptions import TransientStoreError
from shared.prompt_manager import PromptManager, prompt_manager
from utils.time_utils import format_for_patient, now_utc, parse_iso_to_utc

logger = logging.getLogger("escalation")


class EscalationKind(Enum):
    MISSED = "missed"
    EMERGENCY = "emergency"
    REVIEW = "review"


@dataclass
class Escalation:
    kind: EscalationKind
    patient_id: str
    phone_number: str
    response: str
    followup_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"esc_{uuid.uuid4().hex}")
    created_at: datetime = field(default_factory=now_utc)
    notified: bool = False

    def to_json(self) -> str:
        return json.dumps({
            "id": self.id,
            "kind": self.kind.value,
            "patient_id": self.patient_id,
            "phone_number": self.phone_number,
            "response": self.response,
            "followup_id": self.followup_id,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
            "notified": self.notified,
        })

    @classmethod
    def from_json(cls, raw: str) -> "Escalation":
        data = json.loads(raw)
        return cls(
            id=data["id"],
            kind=EscalationKind(data["kind"]),
            patient_id=data["patient_id"],
            phone_number=data["phone_number"],
            response=data["response"],
            followup_id=data.get("followup_id"),
            details=data.get("details") or {},
            created_at=parse_iso_to_utc(data["created_at"]),
            notified=bool(data.get("notified")),
        )


class EscalationLog(ABC):
    @abstractmethod
    async def add(self, escalation: Escalation) -> None:
        pass

    @abstractmethod
    async def recent(self, limit: int = 50) -> List[Escalation]:
        """Newest first"""


class RedisEscalationLog(EscalationLog):
    def __init__(self, redis_client: redis.Redis, settings: Optional[EngineSettings] = None):
        self.redis = redis_client
        self.settings = settings or EngineSettings()
        self.key = f"{self.settings.key_prefix}:escalations"

    async def add(self, escalation: Escalation) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lpush(self.key, escalation.to_json())
                pipe.ltrim(self.key, 0, self.settings.escalation_history_limit - 1)
                await pipe.execute()
        except RedisError as e:
            raise TransientStoreError("add_escalation", e) from e

    async def recent(self, limit: int = 50) -> List[Escalation]:
        try:
            raw_items = await self.redis.lrange(self.key, 0, limit - 1)
        except RedisError as e:
            raise TransientStoreError("recent_escalations", e) from e
        return [Escalation.from_json(raw) for raw in raw_items]


class InMemoryEscalationLog(EscalationLog):
    def __init__(self, max_items: int = 500):
        self._items: List[Escalation] = []
        self.max_items = max_items
        self._lock = asyncio.Lock()

    async def add(self, escalation: Escalation) -> None:
        async with self._lock:
            self._items.insert(0, escalation)
            del self._items[self.max_items:]

    async def recent(self, limit: int = 50) -> List[Escalation]:
        async with self._lock:
            return list(self._items[:limit])


class EscalationService:
    """Raises missed-dose notices, emergency escalations and review flags"""

    def __init__(
        self,
        log: EscalationLog,
        messaging: MessagingAdapter,
        settings: Optional[EngineSettings] = None,
        prompts: Optional[PromptManager] = None,
    ):
        self.log = log
        self.messaging = messaging
        self.settings = settings or EngineSettings()
        self.prompts = prompts or prompt_manager

    async def _raise(self, escalation: Escalation, **template_params) -> Escalation:
        operator_phone = self.settings.operator_phone
        if operator_phone:
            text = self.prompts.load_prompt(
                "escalation_messages",
                variant=escalation.kind.value,
                phone_number=escalation.phone_number,
                response=escalation.response,
                **template_params,
            )
            result = await self.messaging.send(operator_phone, text)
            escalation.notified = result.success
            if not result.success:
                logger.error(f"Operator notification for {escalation.id} failed: {result.error}")

        await self.log.add(escalation)
        log_fn = logger.critical if escalation.kind == EscalationKind.EMERGENCY else logger.warning
        log_fn(f"Escalation {escalation.kind.value} for patient {escalation.patient_id}: {escalation.response!r}")
        return escalation

    async def notify_missed(
        self,
        patient_id: str,
        phone_number: str,
        patient_name: str,
        reminder_title: str,
        response: str,
        followup_id: Optional[str],
        renewal_at: datetime,
    ) -> Escalation:
        escalation = Escalation(
            kind=EscalationKind.MISSED,
            patient_id=patient_id,
            phone_number=phone_number,
            response=response,
            followup_id=followup_id,
            details={"renewal_at": renewal_at.isoformat(), "reminder_title": reminder_title},
        )
        return await self._raise(
            escalation,
            patient_name=patient_name,
            reminder_title=reminder_title,
            renewal_at=format_for_patient(renewal_at, self.settings.local_timezone),
        )

    async def escalate_emergency(
        self,
        patient_id: str,
        phone_number: str,
        patient_name: str,
        response: str,
        keyword: str,
        followup_id: Optional[str] = None,
    ) -> Escalation:
        escalation = Escalation(
            kind=EscalationKind.EMERGENCY,
            patient_id=patient_id,
            phone_number=phone_number,
            response=response,
            followup_id=followup_id,
            details={"keyword": keyword},
        )
        return await self._raise(escalation, patient_name=patient_name, keyword=keyword)

    async def flag_for_review(
        self,
        patient_id: str,
        phone_number: str,
        patient_name: str,
        reminder_title: str,
        response: str,
        followup_id: Optional[str],
    ) -> Escalation:
        escalation = Escalation(
            kind=EscalationKind.REVIEW,
            patient_id=patient_id,
            phone_number=phone_number,
            response=response,
            followup_id=followup_id,
        )
        return await self._raise(escalation, patient_name=patient_name, reminder_title=reminder_title)

    async def recent(self, limit: int = 50) -> List[Escalation]:
        return await self.log.recent(limit)
