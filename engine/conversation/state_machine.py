"""
ConversationStateMachine - one active conversational context per patient

Contexts are flat (verification, reminder_confirmation, general_inquiry,
emergency); a transition simply replaces the current context. Expiry is
sliding: every recorded message pushes expires_at to now + conversation TTL.
"""
import logging
from typing import Any, Dict, List, Optional

from config.settings import EngineSettings
from shared.exceptions import FollowupEngineError, FollowupNotFoundError
from utils.time_utils import now_utc

from .models import (
    ConversationContext,
    ConversationMessage,
    ConversationState,
    ExpectedResponseType,
    MessageDirection,
    MessageType,
    RelatedEntityType,
)
from .store import ConversationRepository

logger = logging.getLogger("conversation-state")


class ConversationStateMachine:
    """
    Maintains per-patient conversation context and message history.

    Handles:
    - Finding the live context for a patient (or starting a fresh one)
    - Context switches tied to a followup, reminder or verification
    - Best-effort message history with sliding expiry
    - Sweeping expired contexts
    """

    def __init__(self, repository: ConversationRepository, settings: Optional[EngineSettings] = None):
        self.repository = repository
        self.settings = settings or EngineSettings()

    @staticmethod
    def _latest(states: List[ConversationState]) -> Optional[ConversationState]:
        live = [s for s in states if s.is_live()]
        if not live:
            return None
        return max(live, key=lambda s: s.updated_at)

    async def get_or_create(
        self,
        patient_id: str,
        phone_number: str,
        default_context: ConversationContext = ConversationContext.GENERAL_INQUIRY,
    ) -> ConversationState:
        """Return the patient's live state, creating one if none exists"""
        existing = self._latest(await self.repository.states_for_patient(patient_id))
        if existing:
            return existing

        state = ConversationState(
            patient_id=patient_id,
            phone_number=phone_number,
            current_context=default_context,
            expires_at=now_utc() + self.settings.conversation_ttl,
        )
        await self.repository.create_state(state)
        logger.info(f"Created conversation state {state.id} for patient {patient_id} ({default_context.value})")
        return state

    async def get_active(self, patient_id: str) -> Optional[ConversationState]:
        """Live state for a patient without creating one"""
        return self._latest(await self.repository.states_for_patient(patient_id))

    async def set_context(
        self,
        state_id: str,
        context: ConversationContext,
        related_entity_id: Optional[str] = None,
        related_entity_type: Optional[RelatedEntityType] = None,
        expected_response_type: Optional[ExpectedResponseType] = None,
        state_data: Optional[Dict[str, Any]] = None,
    ) -> ConversationState:
        """Replace the current context of a state"""
        state = await self.repository.get_state(state_id)
        if state is None:
            raise FollowupNotFoundError(state_id, entity_type="conversation")

        previous = state.current_context
        state.current_context = context
        state.related_entity_id = related_entity_id
        state.related_entity_type = related_entity_type
        state.expected_response_type = expected_response_type
        if state_data is not None:
            state.state_data = state_data
        state.updated_at = now_utc()

        await self.repository.save_state(state)
        logger.info(f"Conversation {state_id}: {previous.value} -> {context.value} (entity {related_entity_id})")
        return state

    async def add_message(
        self,
        state_id: str,
        message: str,
        direction: MessageDirection,
        message_type: MessageType = MessageType.GENERAL,
        intent: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> Optional[ConversationMessage]:
        """
        Record a message and renew the state's expiry.

        Returns None (after logging a warning) when the write fails; history
        never blocks the reply pipeline.
        """
        current = now_utc()
        entry = ConversationMessage(
            conversation_state_id=state_id,
            message=message,
            direction=direction,
            message_type=message_type,
            intent=intent,
            confidence=confidence,
            processed_at=current if direction == MessageDirection.INBOUND else None,
            created_at=current,
        )
        try:
            await self.repository.append_message(entry, current + self.settings.conversation_ttl)
        except FollowupEngineError as e:
            logger.warning(f"Failed to record {direction.value} message for conversation {state_id}: {e}")
            return None

        logger.debug(f"Recorded {direction.value} {message_type.value} message in conversation {state_id}")
        return entry

    async def get_history(self, state_id: str, limit: int = 50) -> List[ConversationMessage]:
        return await self.repository.history(state_id, limit)

    async def deactivate(self, state_id: str) -> None:
        state = await self.repository.get_state(state_id)
        if state is None:
            logger.warning(f"Conversation {state_id} not found for deactivation")
            return
        state.is_active = False
        state.updated_at = now_utc()
        await self.repository.save_state(state)
        logger.info(f"Deactivated conversation state {state_id}")

    async def cleanup_expired(self) -> int:
        """Deactivate every active state whose expiry has passed"""
        current = now_utc()
        cleaned = 0
        for state_id in await self.repository.expired_active_ids(current):
            state = await self.repository.get_state(state_id)
            if state is None:
                await self.repository.remove_from_active(state_id)
                continue
            if not state.is_active:
                await self.repository.remove_from_active(state_id)
                continue
            # Renewed since the index was read
            if not state.is_expired(current):
                continue
            state.is_active = False
            state.updated_at = current
            await self.repository.save_state(state)
            cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired conversation states")
        return cleaned

    async def get_active_states(self, patient_id: str) -> List[ConversationState]:
        states = [s for s in await self.repository.states_for_patient(patient_id) if s.is_live()]
        return sorted(states, key=lambda s: s.updated_at, reverse=True)

    async def find_by_phone(self, phone_number: str) -> Optional[ConversationState]:
        return self._latest(await self.repository.states_for_phone(phone_number))
