"""
ConfirmationLinker - resolves a patient reply to the followup it answers
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from conversation.models import (
    ConversationContext,
    ConversationState,
    MessageDirection,
    MessageType,
    RelatedEntityType,
)
from conversation.state_machine import ConversationStateMachine
from messaging.adapter import MessagingAdapter
from scheduling.engine import FollowupEngine
from scheduling.models import FollowupRecord, FollowupStatus
from shared.exceptions import FollowupEngineError
from shared.prompt_manager import PromptManager, prompt_manager
from utils.time_utils import now_utc

from .classifier import ClassificationResult, ResponseClassifier, ResponseType, detect_emergency
from .escalation import EscalationService
from .inquiry import InquiryResponder

logger = logging.getLogger("response-linker")

MISSED_RENEWAL_DELAY = timedelta(minutes=30)
LATER_REPING_DELAY = timedelta(minutes=60)


@dataclass
class LinkResult:
    """Outcome of linking one inbound reply"""
    success: bool
    matched: bool = False
    followup_id: Optional[str] = None
    classification: Optional[ClassificationResult] = None
    emergency: bool = False
    emergency_keyword: Optional[str] = None
    requires_follow_up: bool = False
    actions: List[str] = field(default_factory=list)
    message: Optional[str] = None
    acknowledgment_sent: bool = False
    error: Optional[str] = None


class ConfirmationLinker:
    """
    Links free-text replies to followups.

    Handles:
    - Emergency keyword detection (always, before anything else)
    - Choosing the followup a reply answers
    - Recording the reply and running the follow-up actions it requires
    - Acknowledging the patient, with a fallback text if anything breaks
    """

    def __init__(
        self,
        engine: FollowupEngine,
        messaging: MessagingAdapter,
        escalations: EscalationService,
        conversations: Optional[ConversationStateMachine] = None,
        classifier: Optional[ResponseClassifier] = None,
        inquiry: Optional[InquiryResponder] = None,
        prompts: Optional[PromptManager] = None,
    ):
        self.engine = engine
        self.messaging = messaging
        self.escalations = escalations
        self.conversations = conversations
        self.classifier = classifier or ResponseClassifier()
        self.prompts = prompts or prompt_manager
        self.inquiry = inquiry or InquiryResponder(prompts=self.prompts)

    async def select_target(
        self,
        patient_id: str,
        state: Optional[ConversationState] = None,
    ) -> Optional[FollowupRecord]:
        """
        Pick the followup a reply from this patient answers.

        The followup the conversation is pointing at wins if it is still
        awaiting a reply; otherwise sent beats pending and, within a status,
        the latest scheduled_at wins.
        """
        records = await self.engine.get_patient_followups(patient_id)
        candidates = [r for r in records if r.status.is_active]
        if not candidates:
            return None

        if (
            state is not None
            and state.current_context == ConversationContext.REMINDER_CONFIRMATION
            and state.related_entity_id
        ):
            for record in candidates:
                if record.id == state.related_entity_id and record.status == FollowupStatus.SENT:
                    return record

        return max(candidates, key=lambda r: (r.status == FollowupStatus.SENT, r.scheduled_at))

    async def link_confirmation_to_reminder(
        self,
        patient_id: str,
        text: str,
        phone_number: Optional[str] = None,
    ) -> LinkResult:
        emergency_keyword = detect_emergency(text)
        state = await self._conversation_for(patient_id, phone_number)
        target: Optional[FollowupRecord] = None
        actions: List[str] = []

        try:
            target = await self.select_target(patient_id, state)
            if target is None:
                return await self._handle_unlinked(patient_id, phone_number, text, emergency_keyword, state)

            phone_number = phone_number or target.phone_number
            classification = self.classifier.classify(text)
            await self._record_message(
                state, text, MessageDirection.INBOUND, MessageType.CONFIRMATION,
                intent=classification.type.value, confidence=classification.confidence,
            )

            recorded = await self.engine.record_response(target, text, classification.is_confirmed)
            if not recorded:
                raise FollowupEngineError("Followup changed while recording reply", followup_id=target.id)

            actions = await self._run_actions(target, text, classification, emergency_keyword, state)
            ack_text = self._acknowledgment_text(target, classification, emergency_keyword)
            ack_sent = await self._send(phone_number, ack_text)
            await self._record_message(state, ack_text, MessageDirection.OUTBOUND, MessageType.CONFIRMATION)

            logger.info(
                f"Linked reply from patient {patient_id} to followup {target.id}: "
                f"{classification.type.value} ({classification.confidence})"
                f"{' [EMERGENCY]' if emergency_keyword else ''}"
            )
            return LinkResult(
                success=True,
                matched=True,
                followup_id=target.id,
                classification=classification,
                emergency=emergency_keyword is not None,
                emergency_keyword=emergency_keyword,
                requires_follow_up=bool(emergency_keyword) or classification.type != ResponseType.CONFIRMED,
                actions=actions,
                message=ack_text,
                acknowledgment_sent=ack_sent,
            )
        except Exception as e:
            logger.error(f"Failed to link reply from patient {patient_id}: {e}", exc_info=True)
            if emergency_keyword and "emergency_escalation" not in actions:
                try:
                    await self.escalations.escalate_emergency(
                        patient_id, phone_number or "", patient_id, text, emergency_keyword,
                        followup_id=target.id if target else None,
                    )
                except Exception as escalation_error:
                    logger.critical(f"Emergency escalation for patient {patient_id} failed: {escalation_error}")
            fallback = self.prompts.load_prompt("acknowledgments", variant="error")
            fallback_phone = phone_number or (target.phone_number if target else None)
            sent = False
            if fallback_phone:
                try:
                    sent = await self._send(fallback_phone, fallback)
                except Exception as send_error:
                    logger.error(f"Fallback message to patient {patient_id} failed: {send_error}")
            return LinkResult(
                success=False,
                matched=target is not None,
                followup_id=target.id if target else None,
                emergency=emergency_keyword is not None,
                emergency_keyword=emergency_keyword,
                message=fallback,
                acknowledgment_sent=sent,
                error=str(e),
            )

    async def _handle_unlinked(
        self,
        patient_id: str,
        phone_number: Optional[str],
        text: str,
        emergency_keyword: Optional[str],
        state: Optional[ConversationState],
    ) -> LinkResult:
        """No pending followup: emergency escalation or an inquiry reply"""
        phone_number = phone_number or (state.phone_number if state else None)
        await self._record_message(state, text, MessageDirection.INBOUND, MessageType.GENERAL)

        if emergency_keyword:
            await self.escalations.escalate_emergency(
                patient_id, phone_number or "", patient_id, text, emergency_keyword
            )
            await self._enter_emergency(state, None)
            reply_text = self.prompts.load_prompt("acknowledgments", variant="emergency")
            actions = ["emergency_escalation"]
            requires_follow_up = True
        else:
            reply = await self.inquiry.respond(patient_id, text)
            reply_text = reply.text
            actions = []
            requires_follow_up = reply.needs_human
            if reply.needs_human:
                await self.escalations.flag_for_review(
                    patient_id, phone_number or "", patient_id, "", text, None
                )
                actions.append("human_review")

        sent = await self._send(phone_number, reply_text) if phone_number else False
        await self._record_message(state, reply_text, MessageDirection.OUTBOUND, MessageType.GENERAL)

        logger.info(f"No pending followup for patient {patient_id}; replied without linking")
        return LinkResult(
            success=True,
            matched=False,
            emergency=emergency_keyword is not None,
            emergency_keyword=emergency_keyword,
            requires_follow_up=requires_follow_up,
            actions=actions,
            message=reply_text if sent else self.prompts.load_prompt("acknowledgments", variant="no_followup"),
            acknowledgment_sent=sent,
        )

    async def _run_actions(
        self,
        record: FollowupRecord,
        text: str,
        classification: ClassificationResult,
        emergency_keyword: Optional[str],
        state: Optional[ConversationState],
    ) -> List[str]:
        actions: List[str] = []

        if emergency_keyword:
            await self.escalations.escalate_emergency(
                record.patient_id, record.phone_number, record.patient_name,
                text, emergency_keyword, followup_id=record.id,
            )
            await self._enter_emergency(state, record)
            actions.append("emergency_escalation")

        if classification.type == ResponseType.MISSED:
            await self.engine.schedule_renewal(record, "missed", MISSED_RENEWAL_DELAY)
            await self.escalations.notify_missed(
                record.patient_id, record.phone_number, record.patient_name,
                record.reminder_title, text, record.id, now_utc() + MISSED_RENEWAL_DELAY,
            )
            actions.extend(["renewal_scheduled", "operator_notified"])
        elif classification.type == ResponseType.LATER:
            await self.engine.schedule_renewal(record, "later", LATER_REPING_DELAY)
            actions.append("reping_scheduled")
        elif classification.type == ResponseType.UNKNOWN and not emergency_keyword:
            await self.escalations.flag_for_review(
                record.patient_id, record.phone_number, record.patient_name,
                record.reminder_title, text, record.id,
            )
            actions.append("human_review")

        return actions

    def _acknowledgment_text(
        self,
        record: FollowupRecord,
        classification: ClassificationResult,
        emergency_keyword: Optional[str],
    ) -> str:
        if emergency_keyword:
            variant = "emergency"
        elif classification.type == ResponseType.CONFIRMED:
            variant = "confirmed"
        elif classification.type == ResponseType.MISSED:
            variant = "missed"
        elif classification.type == ResponseType.LATER:
            variant = "later"
        else:
            variant = "generic"
        return self.prompts.load_prompt(
            "acknowledgments", variant=variant, patient_name=record.patient_name or "Bapak/Ibu"
        )

    async def _send(self, phone_number: str, text: str) -> bool:
        result = await self.messaging.send(phone_number, text)
        if not result.success:
            logger.warning(f"Acknowledgment to {phone_number} failed: {result.error}")
        return result.success

    # Conversation bookkeeping is best effort throughout

    async def _conversation_for(self, patient_id: str, phone_number: Optional[str]) -> Optional[ConversationState]:
        if self.conversations is None:
            return None
        try:
            if phone_number:
                return await self.conversations.get_or_create(patient_id, phone_number)
            return await self.conversations.get_active(patient_id)
        except FollowupEngineError as e:
            logger.warning(f"Conversation lookup for patient {patient_id} failed: {e}")
            return None

    async def _record_message(
        self,
        state: Optional[ConversationState],
        text: str,
        direction: MessageDirection,
        message_type: MessageType,
        intent: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> None:
        if self.conversations is None or state is None:
            return
        await self.conversations.add_message(state.id, text, direction, message_type, intent, confidence)

    async def _enter_emergency(self, state: Optional[ConversationState], record: Optional[FollowupRecord]) -> None:
        if self.conversations is None or state is None:
            return
        try:
            await self.conversations.set_context(
                state.id,
                ConversationContext.EMERGENCY,
                related_entity_id=record.id if record else None,
                related_entity_type=RelatedEntityType.FOLLOWUP if record else RelatedEntityType.GENERAL,
            )
        except FollowupEngineError as e:
            logger.warning(f"Could not switch conversation {state.id} to emergency: {e}")
