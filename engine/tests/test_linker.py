"""
Tests for ConfirmationLinker: target selection, follow-up actions,
acknowledgments and failure fallbacks
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from conversation.models import ConversationContext, MessageDirection, RelatedEntityType
from linking.classifier import ResponseType
from linking.escalation import EscalationKind
from linking.inquiry import InquiryClassifier, InquiryResponder, InquiryResult
from linking.linker import ConfirmationLinker
from scheduling.models import FollowupStatus, FollowupType
from shared.exceptions import TransientStoreError
from shared.prompt_manager import prompt_manager
from utils.time_utils import now_utc

PHONE = "081234567890"


async def _schedule_and_send(engine, request, minutes_ago=16):
    """Schedule a reminder's followups and dispatch whatever is due"""
    followup_ids = await engine.schedule_type_aware_followups(
        request, sent_at=now_utc() - timedelta(minutes=minutes_ago)
    )
    results = await engine.process_pending_followups()
    return followup_ids, [r.followup_id for r in results]


def _ack(variant, **kwargs):
    return prompt_manager.load_prompt("acknowledgments", variant=variant, **kwargs)


class TestTargetSelection:
    """Which followup a reply is linked to"""

    @pytest.mark.asyncio
    async def test_links_latest_pending_when_nothing_sent(self, linker, engine, medication_request):
        followup_ids = await engine.schedule_type_aware_followups(medication_request)
        records = await engine.get_patient_followups("patient-001")
        latest = records[-1]

        result = await linker.link_confirmation_to_reminder("patient-001", "sudah", PHONE)

        assert result.success
        assert result.matched
        assert result.followup_id == latest.id
        assert latest.followup_type == FollowupType.REMINDER_24H
        assert len(followup_ids) == 3

    @pytest.mark.asyncio
    async def test_prefers_sent_followup(self, linker, engine, medication_request):
        _, sent_ids = await _schedule_and_send(engine, medication_request)

        result = await linker.link_confirmation_to_reminder("patient-001", "sudah", PHONE)

        assert result.followup_id == sent_ids[0]
        assert (await engine.get_followup(sent_ids[0])).status == FollowupStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_latest_sent_wins(self, linker, engine, medication_request):
        _, sent_ids = await _schedule_and_send(engine, medication_request, minutes_ago=150)
        records = {r.id: r for r in await engine.get_patient_followups("patient-001")}
        latest_sent = max((records[i] for i in sent_ids), key=lambda r: r.scheduled_at)

        result = await linker.select_target("patient-001")

        assert result.id == latest_sent.id
        assert latest_sent.followup_type == FollowupType.REMINDER_2H

    @pytest.mark.asyncio
    async def test_conversation_hint_wins(self, linker, engine, conversations, medication_request):
        _, sent_ids = await _schedule_and_send(engine, medication_request, minutes_ago=150)
        earlier = [fid for fid in sent_ids
                   if (await engine.get_followup(fid)).followup_type == FollowupType.REMINDER_15MIN][0]
        state = await conversations.get_active("patient-001")
        await conversations.set_context(
            state.id,
            ConversationContext.REMINDER_CONFIRMATION,
            related_entity_id=earlier,
            related_entity_type=RelatedEntityType.FOLLOWUP,
        )

        target = await linker.select_target("patient-001", await conversations.get_active("patient-001"))

        assert target.id == earlier

    @pytest.mark.asyncio
    async def test_reply_leaves_other_stages_alone(self, linker, engine, medication_request):
        followup_ids, sent_ids = await _schedule_and_send(engine, medication_request)

        await linker.link_confirmation_to_reminder("patient-001", "sudah", PHONE)

        for followup_id in followup_ids:
            if followup_id not in sent_ids:
                assert (await engine.get_followup(followup_id)).status == FollowupStatus.PENDING


class TestFollowUpActions:

    @pytest.mark.asyncio
    async def test_confirmed(self, linker, engine, messaging, escalation_log, medication_request):
        _, sent_ids = await _schedule_and_send(engine, medication_request)

        result = await linker.link_confirmation_to_reminder("patient-001", "Sudah minum obat", PHONE)

        assert result.classification.type == ResponseType.CONFIRMED
        assert result.actions == []
        assert result.requires_follow_up is False
        assert result.acknowledgment_sent
        assert result.message == _ack("confirmed")
        assert messaging.messages_to(PHONE)[-1] == _ack("confirmed")
        assert await escalation_log.recent() == []

    @pytest.mark.asyncio
    async def test_missed_schedules_renewal_and_notifies(self, linker, engine, escalation_log, medication_request):
        _, sent_ids = await _schedule_and_send(engine, medication_request)
        before = now_utc()

        result = await linker.link_confirmation_to_reminder("patient-001", "belum, lupa", PHONE)

        assert result.classification.type == ResponseType.MISSED
        assert result.actions == ["renewal_scheduled", "operator_notified"]
        assert result.requires_follow_up
        assert result.message == _ack("missed", patient_name="Budi")

        answered = await engine.get_followup(sent_ids[0])
        assert answered.status == FollowupStatus.RESPONDED
        assert answered.response == "belum, lupa"

        renewals = [r for r in await engine.get_patient_followups("patient-001")
                    if r.metadata.get("renewal_reason") == "missed"]
        assert len(renewals) == 1
        assert renewals[0].metadata["renewed_from"] == answered.id
        assert timedelta(minutes=29) < renewals[0].scheduled_at - before <= timedelta(minutes=31)

        escalations = await escalation_log.recent()
        assert [e.kind for e in escalations] == [EscalationKind.MISSED]
        assert escalations[0].followup_id == answered.id

    @pytest.mark.asyncio
    async def test_later_schedules_reping(self, linker, engine, escalation_log, medication_request):
        await _schedule_and_send(engine, medication_request)
        before = now_utc()

        result = await linker.link_confirmation_to_reminder("patient-001", "nanti sebentar", PHONE)

        assert result.classification.type == ResponseType.LATER
        assert result.actions == ["reping_scheduled"]
        renewals = [r for r in await engine.get_patient_followups("patient-001")
                    if r.metadata.get("renewal_reason") == "later"]
        assert len(renewals) == 1
        assert renewals[0].scheduled_at - before >= timedelta(minutes=59)
        assert await escalation_log.recent() == []

    @pytest.mark.asyncio
    async def test_unknown_flags_for_review(self, linker, engine, escalation_log, medication_request):
        await _schedule_and_send(engine, medication_request)

        result = await linker.link_confirmation_to_reminder("patient-001", "warna pil ini merah muda", PHONE)

        assert result.classification.type == ResponseType.UNKNOWN
        assert result.actions == ["human_review"]
        assert result.message == _ack("generic")
        assert (await escalation_log.recent())[0].kind == EscalationKind.REVIEW

    @pytest.mark.asyncio
    async def test_emergency_with_pending_followup(self, linker, engine, conversations, escalation_log,
                                                   messaging, medication_request):
        _, sent_ids = await _schedule_and_send(engine, medication_request)

        result = await linker.link_confirmation_to_reminder("patient-001", "sudah, tapi sesak napas", PHONE)

        assert result.emergency
        assert result.emergency_keyword == "sesak napas"
        assert result.requires_follow_up
        assert "emergency_escalation" in result.actions
        assert result.message == _ack("emergency")
        assert messaging.messages_to(PHONE)[-1] == _ack("emergency")
        assert (await engine.get_followup(sent_ids[0])).status == FollowupStatus.CONFIRMED

        escalation = (await escalation_log.recent())[0]
        assert escalation.kind == EscalationKind.EMERGENCY
        assert escalation.details["keyword"] == "sesak napas"

        state = await conversations.get_active("patient-001")
        assert state.current_context == ConversationContext.EMERGENCY

    @pytest.mark.asyncio
    async def test_operator_is_messaged_when_configured(self, engine, messaging, escalations, conversations,
                                                        settings, medication_request):
        settings.operator_phone = "081999999999"
        linker = ConfirmationLinker(engine, messaging, escalations, conversations=conversations)
        await _schedule_and_send(engine, medication_request)

        await linker.link_confirmation_to_reminder("patient-001", "belum", PHONE)

        operator_texts = messaging.messages_to("081999999999")
        assert len(operator_texts) == 1
        assert "Budi" in operator_texts[0]
        assert "Minum Tamoxifen" in operator_texts[0]

    @pytest.mark.asyncio
    async def test_conversation_history_recorded(self, linker, engine, conversations, medication_request):
        await _schedule_and_send(engine, medication_request)

        await linker.link_confirmation_to_reminder("patient-001", "sudah", PHONE)

        state = await conversations.get_active("patient-001")
        history = await conversations.get_history(state.id)
        assert [m.direction for m in history] == [
            MessageDirection.OUTBOUND,
            MessageDirection.INBOUND,
            MessageDirection.OUTBOUND,
        ]
        assert history[1].message == "sudah"
        assert history[1].intent == "confirmed"


class TestNoPendingFollowup:

    @pytest.mark.asyncio
    async def test_static_reply(self, linker, messaging, escalation_log):
        result = await linker.link_confirmation_to_reminder("patient-009", "halo", PHONE)

        assert result.success
        assert not result.matched
        assert result.followup_id is None
        assert result.message == _ack("generic")
        assert messaging.messages_to(PHONE) == [_ack("generic")]
        assert await escalation_log.recent() == []

    @pytest.mark.asyncio
    async def test_without_phone_nothing_is_sent(self, linker, messaging):
        result = await linker.link_confirmation_to_reminder("patient-009", "halo")

        assert not result.matched
        assert not result.acknowledgment_sent
        assert result.message == _ack("no_followup")
        assert messaging.sent_messages == []

    @pytest.mark.asyncio
    async def test_emergency_without_followup(self, linker, messaging, escalation_log):
        result = await linker.link_confirmation_to_reminder("patient-009", "TOLONG", PHONE)

        assert result.emergency
        assert not result.matched
        assert result.actions == ["emergency_escalation"]
        assert messaging.messages_to(PHONE) == [_ack("emergency")]
        assert (await escalation_log.recent())[0].kind == EscalationKind.EMERGENCY

    @pytest.mark.asyncio
    async def test_inquiry_classifier_reply(self, engine, messaging, escalations, escalation_log):
        class StubClassifier(InquiryClassifier):
            async def classify(self, text, patient_id):
                return InquiryResult(intent="schedule_question", confidence=0.9,
                                     reply_text="Jadwal kontrol Anda hari Senin.")

        linker = ConfirmationLinker(engine, messaging, escalations,
                                    inquiry=InquiryResponder(classifier=StubClassifier()))

        result = await linker.link_confirmation_to_reminder("patient-009", "kapan kontrol?", PHONE)

        assert result.message == "Jadwal kontrol Anda hari Senin."
        assert await escalation_log.recent() == []

    @pytest.mark.asyncio
    async def test_low_confidence_inquiry_needs_human(self, engine, messaging, escalations, escalation_log):
        classifier = AsyncMock(spec=InquiryClassifier)
        classifier.classify.return_value = InquiryResult(intent="unclear", confidence=0.2, reply_text="?")
        linker = ConfirmationLinker(engine, messaging, escalations, inquiry=InquiryResponder(classifier=classifier))

        result = await linker.link_confirmation_to_reminder("patient-009", "hmm", PHONE)

        assert result.requires_follow_up
        assert result.actions == ["human_review"]
        assert result.message == _ack("generic")
        assert (await escalation_log.recent())[0].kind == EscalationKind.REVIEW

    @pytest.mark.asyncio
    async def test_classifier_crash_degrades_to_static_reply(self, engine, messaging, escalations):
        classifier = AsyncMock(spec=InquiryClassifier)
        classifier.classify.side_effect = RuntimeError("LLM unavailable")
        linker = ConfirmationLinker(engine, messaging, escalations, inquiry=InquiryResponder(classifier=classifier))

        result = await linker.link_confirmation_to_reminder("patient-009", "halo", PHONE)

        assert result.success
        assert result.message == _ack("generic")


class TestFailureFallback:

    @pytest.mark.asyncio
    async def test_store_failure_returns_fallback(self, linker, engine, messaging, medication_request):
        await _schedule_and_send(engine, medication_request)
        engine.store.update = AsyncMock(side_effect=TransientStoreError("update", ConnectionError("down")))

        result = await linker.link_confirmation_to_reminder("patient-001", "sudah", PHONE)

        assert result.success is False
        assert result.matched
        assert "update" in result.error
        assert result.message == _ack("error")
        assert result.acknowledgment_sent
        assert messaging.messages_to(PHONE)[-1] == _ack("error")

    @pytest.mark.asyncio
    async def test_fallback_send_failure_is_swallowed(self, linker, engine, messaging, medication_request):
        await _schedule_and_send(engine, medication_request)
        engine.store.update = AsyncMock(side_effect=TransientStoreError("update", ConnectionError("down")))
        messaging.should_fail = True
        messaging.raise_exception = True

        result = await linker.link_confirmation_to_reminder("patient-001", "sudah", PHONE)

        assert result.success is False
        assert result.acknowledgment_sent is False

    @pytest.mark.asyncio
    async def test_emergency_still_escalated_on_failure(self, linker, engine, escalation_log, medication_request):
        await _schedule_and_send(engine, medication_request)
        engine.store.update = AsyncMock(side_effect=TransientStoreError("update", ConnectionError("down")))

        result = await linker.link_confirmation_to_reminder("patient-001", "pingsan", PHONE)

        assert result.success is False
        assert result.emergency
        assert (await escalation_log.recent())[0].kind == EscalationKind.EMERGENCY

    @pytest.mark.asyncio
    async def test_concurrent_change_is_a_failure(self, linker, engine, medication_request):
        await _schedule_and_send(engine, medication_request)
        engine.store.update = AsyncMock(return_value=False)

        result = await linker.link_confirmation_to_reminder("patient-001", "sudah", PHONE)

        assert result.success is False
        assert "changed" in result.error
