"""
Tests for followup and conversation data models
"""
import pytest
from datetime import datetime, timedelta, timezone

from conversation.models import (
    ConversationContext,
    ConversationMessage,
    ConversationState,
    MessageDirection,
    MessageType,
    RelatedEntityType,
)
from scheduling.models import (
    FollowupRecord,
    FollowupStage,
    FollowupStatus,
    FollowupType,
    ReminderPriority,
    ReminderType,
)
from shared.exceptions import InvalidStatusTransitionError


class TestFollowupRecord:
    """Tests for FollowupRecord model"""

    def test_default_values(self):
        """Test that default values are set correctly"""
        record = FollowupRecord()

        assert record.id.startswith("followup_")
        assert record.status == FollowupStatus.PENDING
        assert record.followup_type == FollowupType.GENERAL
        assert record.stage == FollowupStage.INITIAL
        assert record.reminder_type == ReminderType.MEDICATION
        assert record.priority == ReminderPriority.MEDIUM
        assert record.retry_count == 0
        assert record.max_retries == 3
        assert record.metadata == {}
        assert record.scheduled_at.tzinfo is not None

    def test_scheduled_at_is_immutable(self):
        """scheduled_at is fixed once the record exists"""
        record = FollowupRecord(scheduled_at=datetime(2026, 1, 15, 2, 15, tzinfo=timezone.utc))

        with pytest.raises(AttributeError):
            record.scheduled_at = datetime(2026, 1, 16, tzinfo=timezone.utc)

    def test_redis_hash_round_trip(self):
        """Test serialization to and from the Redis hash encoding"""
        scheduled = datetime(2026, 1, 15, 2, 15, tzinfo=timezone.utc)
        record = FollowupRecord(
            id="followup_test",
            reminder_id="reminder-1",
            patient_id="patient-1",
            phone_number="081234567890",
            patient_name="Siti",
            followup_type=FollowupType.REMINDER_2H,
            stage=FollowupStage.FOLLOWUP_2H,
            scheduled_at=scheduled,
            reminder_type=ReminderType.APPOINTMENT,
            priority=ReminderPriority.HIGH,
            metadata={"source": "test"},
        )

        data = record.to_redis_hash()
        assert all(isinstance(v, str) for v in data.values())
        assert data["sent_at"] == ""
        assert data["status"] == "pending"

        restored = FollowupRecord.from_redis_hash(data)
        assert restored.id == "followup_test"
        assert restored.scheduled_at == scheduled
        assert restored.sent_at is None
        assert restored.followup_type == FollowupType.REMINDER_2H
        assert restored.reminder_type == ReminderType.APPOINTMENT
        assert restored.priority == ReminderPriority.HIGH
        assert restored.metadata == {"source": "test"}

    def test_forward_transitions(self):
        record = FollowupRecord()

        record.transition_to(FollowupStatus.SENT)
        record.transition_to(FollowupStatus.RESPONDED)
        record.transition_to(FollowupStatus.CONFIRMED)

        assert record.status == FollowupStatus.CONFIRMED
        assert record.status.is_terminal

    def test_terminal_status_cannot_change(self):
        record = FollowupRecord()
        record.transition_to(FollowupStatus.CANCELLED)

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            record.transition_to(FollowupStatus.PENDING)

        assert exc_info.value.current_status == "cancelled"

    def test_sent_cannot_regress_to_pending(self):
        record = FollowupRecord()
        record.transition_to(FollowupStatus.SENT)

        with pytest.raises(InvalidStatusTransitionError):
            record.transition_to(FollowupStatus.PENDING)

    def test_failed_can_be_retried(self):
        record = FollowupRecord()
        record.transition_to(FollowupStatus.FAILED)
        record.retry_count = 2

        assert record.can_retry()
        record.transition_to(FollowupStatus.PENDING)
        assert record.status == FollowupStatus.PENDING

    def test_retry_limit(self):
        record = FollowupRecord(retry_count=3)
        record.transition_to(FollowupStatus.FAILED)

        assert not record.can_retry()


class TestReminderEnums:

    def test_reminder_type_from_string(self):
        assert ReminderType.from_string("appointment") == ReminderType.APPOINTMENT
        assert ReminderType.from_string(None) == ReminderType.MEDICATION
        assert ReminderType.from_string("unknown") == ReminderType.MEDICATION

    def test_priority_from_string(self):
        assert ReminderPriority.from_string("high") == ReminderPriority.HIGH
        assert ReminderPriority.from_string("") == ReminderPriority.MEDIUM

    def test_active_statuses(self):
        assert FollowupStatus.PENDING.is_active
        assert FollowupStatus.SENT.is_active
        assert not FollowupStatus.RESPONDED.is_active
        assert not FollowupStatus.FAILED.is_terminal


class TestConversationModels:
    """Tests for ConversationState and ConversationMessage"""

    def test_state_expiry(self):
        now = datetime(2026, 1, 15, 2, 0, tzinfo=timezone.utc)
        state = ConversationState(
            patient_id="patient-1",
            phone_number="081234567890",
            expires_at=now + timedelta(hours=24),
        )

        assert not state.is_expired(now)
        assert state.is_live(now)
        assert state.is_expired(now + timedelta(hours=25))

        state.is_active = False
        assert not state.is_live(now)

    def test_state_hash_round_trip(self):
        now = datetime(2026, 1, 15, 2, 0, tzinfo=timezone.utc)
        state = ConversationState(
            patient_id="patient-1",
            phone_number="081234567890",
            expires_at=now,
            current_context=ConversationContext.REMINDER_CONFIRMATION,
            related_entity_id="followup_1",
            related_entity_type=RelatedEntityType.FOLLOWUP,
            state_data={"reminder_id": "reminder-1"},
            is_active=False,
        )

        data = state.to_redis_hash()
        assert data["is_active"] == "0"

        restored = ConversationState.from_redis_hash(data)
        assert restored.current_context == ConversationContext.REMINDER_CONFIRMATION
        assert restored.related_entity_type == RelatedEntityType.FOLLOWUP
        assert restored.expected_response_type is None
        assert restored.state_data == {"reminder_id": "reminder-1"}
        assert restored.is_active is False

    def test_message_json_round_trip(self):
        message = ConversationMessage(
            conversation_state_id="conv_1",
            message="sudah",
            direction=MessageDirection.INBOUND,
            message_type=MessageType.CONFIRMATION,
            intent="confirmed",
            confidence=0.9,
        )

        restored = ConversationMessage.from_json(message.to_json())

        assert restored == message
