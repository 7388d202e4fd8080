"""
Tests for the RQ task functions

Jobs are called directly (synchronously), with build_services patched to
return in-memory services.
"""
import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from scheduling.tasks import (
    cleanup_expired_conversations_job,
    expire_stale_followups_job,
    link_reply_job,
    process_pending_followups_job,
)
from utils.time_utils import now_utc


@pytest.fixture
def patched_services(memory_services):
    with patch("shared.services.build_services", return_value=memory_services) as build:
        yield memory_services, build


class TestProcessPendingFollowupsJob:

    def test_sends_due_followups(self, patched_services, medication_request):
        services, _ = patched_services
        asyncio.run(services.engine.schedule_type_aware_followups(
            medication_request, sent_at=now_utc() - timedelta(minutes=20)
        ))

        result = process_pending_followups_job()

        assert result == "Processed 1 followups: 1 sent, 0 failed"
        assert len(services.messaging.sent_messages) == 1

    def test_counts_failures(self, patched_services, medication_request):
        services, _ = patched_services
        asyncio.run(services.engine.schedule_type_aware_followups(
            medication_request, sent_at=now_utc() - timedelta(minutes=20)
        ))
        services.messaging.should_fail = True

        assert process_pending_followups_job() == "Processed 1 followups: 0 sent, 1 failed"

    def test_nothing_due(self, patched_services):
        assert process_pending_followups_job() == "Processed 0 followups: 0 sent, 0 failed"

    def test_services_always_closed(self, patched_services):
        services, _ = patched_services
        services.messaging.close = AsyncMock()

        process_pending_followups_job()

        services.messaging.close.assert_awaited_once()

    def test_build_failure_is_reported(self):
        with patch("shared.services.build_services", side_effect=ConnectionError("Redis unreachable")):
            result = process_pending_followups_job()

        assert result == "Followup processing cycle failed: Redis unreachable"


class TestMaintenanceJobs:

    def test_expire_stale_followups(self, patched_services):
        assert expire_stale_followups_job() == "Expired 0 followups"

    def test_cleanup_expired_conversations(self, patched_services):
        assert cleanup_expired_conversations_job() == "Deactivated 0 expired conversations"

    def test_cleanup_failure(self, patched_services):
        services, _ = patched_services
        services.conversations.cleanup_expired = AsyncMock(side_effect=RuntimeError("boom"))

        assert cleanup_expired_conversations_job() == "Conversation cleanup failed: boom"


class TestLinkReplyJob:

    def test_no_pending_followup(self, patched_services):
        assert link_reply_job("patient-404", "halo") == "No pending followup for patient patient-404"

    def test_links_reply(self, patched_services, medication_request):
        services, _ = patched_services
        asyncio.run(services.engine.schedule_type_aware_followups(
            medication_request, sent_at=now_utc() - timedelta(minutes=20)
        ))
        process_pending_followups_job()
        records = asyncio.run(services.engine.get_patient_followups("patient-001"))
        sent = [r for r in records if r.sent_at is not None][0]

        result = link_reply_job("patient-001", "sudah", "081234567890")

        assert result == f"Linked reply to followup {sent.id} (confirmed)"
