"""
End-to-end reminder day: schedule, dispatch, reply, expiry (in-memory, frozen clock)
"""
import pytest
from datetime import datetime, timedelta, timezone
from freezegun import freeze_time

from linking.classifier import ResponseType
from scheduling.models import FollowupStatus, FollowupType
from utils.time_utils import format_for_patient


@pytest.mark.asyncio
async def test_reminder_day(engine, linker, messaging, medication_request):
    """Reminder at 09:00 WIB, patient confirms the 15-minute followup at 09:20"""
    with freeze_time("2026-01-15 02:00:00", real_asyncio=True) as frozen:
        sent_at = datetime(2026, 1, 15, 2, 0, tzinfo=timezone.utc)
        await engine.schedule_type_aware_followups(medication_request, sent_at=sent_at)

        records = await engine.get_patient_followups("patient-001")
        assert [format_for_patient(r.scheduled_at) for r in records] == [
            "15/01/2026 09:15 WIB",
            "15/01/2026 11:00 WIB",
            "16/01/2026 09:00 WIB",
        ]

        # 09:10: nothing due yet
        frozen.move_to("2026-01-15 02:10:00")
        assert await engine.process_pending_followups() == []

        # 09:16: the 15-minute followup goes out
        frozen.move_to("2026-01-15 02:16:00")
        results = await engine.process_pending_followups()
        assert len(results) == 1
        assert results[0].status == FollowupStatus.SENT
        assert "15 menit yang lalu" in messaging.messages_to("081234567890")[0]

        # 09:20: patient replies
        frozen.move_to("2026-01-15 02:20:00")
        link = await linker.link_confirmation_to_reminder("patient-001", "sudah", "081234567890")

        assert link.success
        assert link.followup_id == results[0].followup_id
        assert link.classification.type == ResponseType.CONFIRMED

        by_type = {r.followup_type: r for r in await engine.get_patient_followups("patient-001")}
        assert by_type[FollowupType.REMINDER_15MIN].status == FollowupStatus.CONFIRMED
        assert by_type[FollowupType.REMINDER_15MIN].responded_at == datetime(2026, 1, 15, 2, 20, tzinfo=timezone.utc)
        assert by_type[FollowupType.REMINDER_2H].status == FollowupStatus.PENDING
        assert by_type[FollowupType.REMINDER_24H].status == FollowupStatus.PENDING

        # 11:00 and next day 09:00: remaining stages are still sent
        frozen.move_to("2026-01-15 04:00:00")
        assert [r.status for r in await engine.process_pending_followups()] == [FollowupStatus.SENT]
        frozen.move_to("2026-01-16 02:00:00")
        assert [r.status for r in await engine.process_pending_followups()] == [FollowupStatus.SENT]

        # A day after the 2-hour followup went out it expires; the 24-hour one is still open
        frozen.move_to("2026-01-16 04:00:01")
        assert await engine.expire_stale_followups() == 1

        by_type = {r.followup_type: r for r in await engine.get_patient_followups("patient-001")}
        assert by_type[FollowupType.REMINDER_2H].status == FollowupStatus.EXPIRED
        assert by_type[FollowupType.REMINDER_24H].status == FollowupStatus.SENT


@pytest.mark.asyncio
async def test_cancelled_reminder_sends_nothing(engine, messaging, medication_request):
    with freeze_time("2026-01-15 02:00:00", real_asyncio=True) as frozen:
        await engine.schedule_type_aware_followups(medication_request)

        assert await engine.cancel_followups_for_reminder("reminder-001") == 3

        frozen.move_to("2026-01-17 02:00:00")
        await engine.process_pending_followups()

    assert messaging.sent_messages == []
