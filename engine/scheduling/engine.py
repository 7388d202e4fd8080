"""
FollowupEngine - schedules, dispatches and resolves reminder followups
"""
import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from config.settings import EngineSettings
from conversation.models import (
    ConversationContext,
    ExpectedResponseType,
    MessageDirection,
    MessageType,
    RelatedEntityType,
)
from messaging.adapter import MessagingAdapter
from shared.exceptions import (
    DispatchFailureError,
    FollowupEngineError,
    FollowupNotFoundError,
    FollowupSchedulingError,
)
from shared.prompt_manager import PromptManager, prompt_manager
from utils.time_utils import now_utc

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
from .scheduler import FollowupScheduler
from .store import FollowupStore

logger = logging.getLogger("followup-engine")

PROCESS_DRIVER_NAME = "process_followups"
EXPIRE_DRIVER_NAME = "expire_followups"

# Medication cadence, scaled by priority
BASE_OFFSETS: Tuple[Tuple[FollowupType, timedelta], ...] = (
    (FollowupType.REMINDER_15MIN, timedelta(minutes=15)),
    (FollowupType.REMINDER_2H, timedelta(hours=2)),
    (FollowupType.REMINDER_24H, timedelta(hours=24)),
)

PRIORITY_MULTIPLIERS: Dict[ReminderPriority, float] = {
    ReminderPriority.HIGH: 0.5,
    ReminderPriority.MEDIUM: 1.0,
    ReminderPriority.LOW: 1.5,
}

# Fixed cadences; priority is ignored for these reminder types
TYPE_OFFSETS: Dict[ReminderType, Tuple[timedelta, timedelta, timedelta]] = {
    ReminderType.APPOINTMENT: (timedelta(minutes=15), timedelta(hours=3), timedelta(hours=24)),
    ReminderType.GENERAL: (timedelta(minutes=30), timedelta(hours=4), timedelta(hours=36)),
}

STAGE_FOR_TYPE: Dict[FollowupType, FollowupStage] = {
    FollowupType.REMINDER_15MIN: FollowupStage.FOLLOWUP_15MIN,
    FollowupType.REMINDER_2H: FollowupStage.FOLLOWUP_2H,
    FollowupType.REMINDER_24H: FollowupStage.FOLLOWUP_24H,
    FollowupType.GENERAL: FollowupStage.INITIAL,
}

RETRY_BASE_DELAY = timedelta(minutes=5)


def compute_followup_offsets(
    reminder_type: ReminderType,
    priority: ReminderPriority = ReminderPriority.MEDIUM,
) -> List[Tuple[FollowupType, timedelta]]:
    """
    Offsets (from the reminder send time) of each followup stage

    MEDICATION: 15m / 2h / 24h scaled by priority (HIGH x0.5, LOW x1.5)
    APPOINTMENT: 15m / 3h / 24h
    GENERAL: 30m / 4h / 36h
    """
    if reminder_type in TYPE_OFFSETS:
        return [
            (followup_type, offset)
            for (followup_type, _), offset in zip(BASE_OFFSETS, TYPE_OFFSETS[reminder_type])
        ]

    multiplier = PRIORITY_MULTIPLIERS.get(priority, 1.0)
    return [(followup_type, base * multiplier) for followup_type, base in BASE_OFFSETS]


def retry_delay(retry_count: int) -> timedelta:
    """Backoff before a manual retry: 5 min x 2^retry_count"""
    return RETRY_BASE_DELAY * (2 ** retry_count)


class FollowupEngine:
    """
    Owns the followup lifecycle.

    Handles:
    - Type-aware staged scheduling (all stages or none)
    - Renewals after "missed"/"later" replies
    - The periodic dispatch cycle (single-flight, per-record claims)
    - Cancellation, manual retry, response-window expiry and stats
    """

    def __init__(
        self,
        store: FollowupStore,
        scheduler: FollowupScheduler,
        messaging: MessagingAdapter,
        settings: Optional[EngineSettings] = None,
        prompts: Optional[PromptManager] = None,
        conversations=None,
        directory=None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.messaging = messaging
        self.settings = settings or EngineSettings()
        self.prompts = prompts or prompt_manager
        # ConversationStateMachine, optional
        self.conversations = conversations
        # ReminderDirectory, optional
        self.directory = directory

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_type_aware_followups(
        self,
        request: FollowupScheduleRequest,
        sent_at: Optional[datetime] = None,
    ) -> List[str]:
        """
        Create and enqueue every followup stage for a sent reminder.

        If any stage fails, stages already created are cancelled and
        FollowupSchedulingError is raised.
        """
        base_time = sent_at or now_utc()
        created: List[str] = []
        records: List[FollowupRecord] = []

        try:
            for followup_type, offset in compute_followup_offsets(request.reminder_type, request.priority):
                record = FollowupRecord(
                    reminder_id=request.reminder_id,
                    patient_id=request.patient_id,
                    phone_number=request.phone_number,
                    patient_name=request.patient_name,
                    followup_type=followup_type,
                    stage=STAGE_FOR_TYPE[followup_type],
                    scheduled_at=base_time + offset,
                    reminder_type=request.reminder_type,
                    reminder_title=request.reminder_title,
                    reminder_message=request.reminder_message,
                    priority=request.priority,
                    metadata=dict(request.metadata),
                )
                await self._create_and_enqueue(record)
                created.append(record.id)
                records.append(record)
        except FollowupEngineError as e:
            logger.error(f"Scheduling followups for reminder {request.reminder_id} failed after {len(created)} stages: {e}")
            await self._rollback(created)
            raise FollowupSchedulingError(request.reminder_id, e, rolled_back=created) from e

        # Earlier stages are replaced only once every new stage exists
        await self._supersede_active(records)

        logger.info(
            f"Scheduled {len(created)} {request.reminder_type.value} followups "
            f"for reminder {request.reminder_id} (patient {request.patient_id})"
        )
        return created

    async def schedule_medication_followups(
        self,
        request: FollowupScheduleRequest,
        sent_at: Optional[datetime] = None,
    ) -> List[str]:
        """Legacy entry point: fixed 15m / 2h / 24h medication cadence"""
        medication_request = dataclasses.replace(
            request,
            reminder_type=ReminderType.MEDICATION,
            priority=ReminderPriority.MEDIUM,
        )
        return await self.schedule_type_aware_followups(medication_request, sent_at=sent_at)

    async def schedule_followups_for_reminder(
        self,
        reminder_id: str,
        sent_at: Optional[datetime] = None,
    ) -> List[str]:
        """Look the reminder up in the directory and schedule its followups"""
        if self.directory is None:
            raise FollowupEngineError("No reminder directory configured", reminder_id=reminder_id)

        reminder = await self.directory.get_reminder(reminder_id)
        if reminder is None:
            raise FollowupNotFoundError(reminder_id, entity_type="reminder")

        return await self.schedule_type_aware_followups(reminder.to_schedule_request(), sent_at=sent_at)

    async def schedule_renewal(self, record: FollowupRecord, reason: str, delay: timedelta) -> str:
        """
        Schedule a single GENERAL re-ping for the same parent reminder

        Args:
            record: The followup the patient just answered
            reason: "missed" or "later"
            delay: How long from now to wait before sending
        """
        renewal = FollowupRecord(
            reminder_id=record.reminder_id,
            patient_id=record.patient_id,
            phone_number=record.phone_number,
            patient_name=record.patient_name,
            followup_type=FollowupType.GENERAL,
            stage=FollowupStage.INITIAL,
            scheduled_at=now_utc() + delay,
            reminder_type=record.reminder_type,
            reminder_title=record.reminder_title,
            reminder_message=record.reminder_message,
            priority=record.priority,
            metadata={
                **record.metadata,
                "renewal_reason": reason,
                "renewed_from": record.id,
            },
        )
        await self._create_and_enqueue(renewal)
        await self._supersede_active([renewal])
        logger.info(f"Scheduled {reason} renewal {renewal.id} for reminder {record.reminder_id} at {renewal.scheduled_at.isoformat()}")
        return renewal.id

    async def _create_and_enqueue(self, record: FollowupRecord) -> None:
        await self.store.create(record)
        await self.scheduler.enqueue(record.id, record.scheduled_at)

    async def _supersede_active(self, records: List[FollowupRecord]) -> None:
        """
        Cancel active records already filling the (reminder, stage) slots of `records`.

        Failures are logged per record and never raised.
        """
        if not records:
            return
        replacement_for = {record.stage: record.id for record in records}
        new_ids = {record.id for record in records}
        reminder_id = records[0].reminder_id

        try:
            sibling_ids = await self.store.reminder_followup_ids(reminder_id)
        except FollowupEngineError as e:
            logger.error(f"Could not look up earlier followups of reminder {reminder_id}: {e}")
            return

        for followup_id in sibling_ids:
            if followup_id in new_ids:
                continue
            try:
                existing = await self.store.get(followup_id)
                if existing is None or not existing.status.is_active:
                    continue
                replacement_id = replacement_for.get(existing.stage)
                if replacement_id is None:
                    continue
                existing.metadata["superseded_by"] = replacement_id
                await self._cancel_record(existing)
                logger.info(f"Followup {followup_id} superseded by {replacement_id} ({existing.stage.value})")
            except FollowupEngineError as e:
                logger.error(f"Superseding followup {followup_id} failed: {e}")

    async def _rollback(self, followup_ids: List[str]) -> None:
        for followup_id in followup_ids:
            try:
                await self.cancel_followup(followup_id)
            except FollowupEngineError as e:
                logger.error(f"Rollback of followup {followup_id} failed: {e}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def render_message(self, record: FollowupRecord) -> str:
        """Patient-facing text for a followup, by stage and reminder type"""
        params = {
            "patient_name": record.patient_name or "Bapak/Ibu",
            "reminder_title": record.reminder_title or "pengingat kesehatan Anda",
        }

        renewal_reason = record.metadata.get("renewal_reason")
        if renewal_reason and self.prompts.has_prompt("renewal_messages", renewal_reason):
            return self.prompts.load_prompt("renewal_messages", variant=renewal_reason, **params)

        if record.followup_type == FollowupType.GENERAL:
            return self.prompts.load_prompt("followup_messages", variant="general", **params)

        variant = f"{record.followup_type.value.lower()}_{record.reminder_type.value.lower()}"
        return self.prompts.load_prompt("followup_messages", variant=variant, **params)

    async def process_pending_followups(self) -> List[FollowupProcessingResult]:
        """
        Send every due followup once.

        Single-flight: returns [] when another driver holds the lock. Each due
        id is claimed before dispatch and always dequeued after the attempt.
        """
        lock_token = await self.scheduler.acquire_driver_lock(
            PROCESS_DRIVER_NAME, self.settings.driver_lock_ttl_seconds
        )
        if not lock_token:
            logger.info("Followup processing already running elsewhere, skipping this cycle")
            return []

        results: List[FollowupProcessingResult] = []
        cycle_now = now_utc()

        async def process(followup_id: str) -> None:
            result = await self._process_due(followup_id)
            if result is not None:
                results.append(result)

        try:
            await self._drain(lambda limit: self.scheduler.due_now(limit=limit, now=cycle_now), process)
        finally:
            await self.scheduler.release_driver_lock(PROCESS_DRIVER_NAME, lock_token)

        sent = sum(1 for r in results if r.status == FollowupStatus.SENT)
        logger.info(f"Processed {len(results)} due followups ({sent} sent)")
        return results

    async def _drain(
        self,
        fetch_page: Callable[[int], Awaitable[List[str]]],
        handle: Callable[[str], Awaitable[None]],
    ) -> None:
        """
        Hand every id from an index to `handle`, one batch at a time, until none are left.

        Handled ids normally leave the index. Ids that stay (lost claims, failed
        dequeues) are fetched again but handled once per call.
        """
        batch_limit = self.settings.followup_batch_limit
        seen: Set[str] = set()
        while True:
            page = await fetch_page(len(seen) + batch_limit)
            fresh = [followup_id for followup_id in page if followup_id not in seen]
            if not fresh:
                return
            for followup_id in fresh:
                seen.add(followup_id)
                await handle(followup_id)

    async def _process_due(self, followup_id: str) -> Optional[FollowupProcessingResult]:
        try:
            claim_token = await self.scheduler.claim(followup_id, self.settings.claim_ttl_seconds)
        except FollowupEngineError as e:
            logger.error(f"Could not claim followup {followup_id}: {e}")
            return FollowupProcessingResult(followup_id=followup_id, processed=False, error=str(e))

        if not claim_token:
            logger.debug(f"Followup {followup_id} claimed by another worker, skipping")
            return None

        try:
            return await self._dispatch(followup_id)
        except FollowupEngineError as e:
            logger.error(f"Failed to process followup {followup_id}: {e}")
            return FollowupProcessingResult(
                followup_id=followup_id,
                processed=False,
                status=FollowupStatus.FAILED,
                error=str(e),
            )
        finally:
            try:
                await self.scheduler.dequeue(followup_id)
                await self.scheduler.release_claim(followup_id, claim_token)
            except FollowupEngineError as e:
                logger.error(f"Failed to dequeue followup {followup_id}: {e}")

    async def _dispatch(self, followup_id: str) -> FollowupProcessingResult:
        record = await self.store.get(followup_id)
        if record is None:
            logger.warning(f"Followup {followup_id} is queued but not found")
            return FollowupProcessingResult(
                followup_id=followup_id,
                processed=False,
                status=FollowupStatus.FAILED,
                error="Followup data not found",
            )

        if record.status != FollowupStatus.PENDING:
            # Already handled (cancelled, confirmed, ...)
            return FollowupProcessingResult(followup_id=followup_id, processed=True, status=record.status)

        text = self.render_message(record)
        try:
            send_result = await self.messaging.send_or_raise(record.phone_number, text)
            success, message_id, error = True, send_result.message_id, None
        except DispatchFailureError as e:
            success, message_id, error = False, None, e.error_message
        except Exception as e:
            logger.error(f"Messaging channel raised while sending followup {followup_id}: {e}", exc_info=True)
            success, message_id, error = False, None, str(e) or type(e).__name__

        if not success:
            record.retry_count += 1
            record.error = error or "Unknown error"
            record.transition_to(FollowupStatus.FAILED)
            await self.store.update(record, expected_status=FollowupStatus.PENDING.value)
            logger.warning(f"Followup {followup_id} send failed (attempt {record.retry_count}): {record.error}")
            return FollowupProcessingResult(
                followup_id=followup_id,
                processed=False,
                status=FollowupStatus.FAILED,
                error=record.error,
            )

        sent_at = now_utc()
        record.sent_at = sent_at
        record.message_id = message_id
        record.error = None
        record.transition_to(FollowupStatus.SENT)
        written = await self.store.update(record, expected_status=FollowupStatus.PENDING.value)
        if not written:
            logger.warning(f"Followup {followup_id} was sent but changed status during dispatch (likely cancelled)")
            return FollowupProcessingResult(
                followup_id=followup_id,
                processed=True,
                status=FollowupStatus.SENT,
                sent_message_id=message_id,
                error="Status changed during dispatch",
            )

        await self.store.mark_awaiting(followup_id, sent_at + self.settings.response_window)
        await self._track_outbound(record, text)

        logger.info(f"Followup {followup_id} sent to patient {record.patient_id} (message {message_id})")
        return FollowupProcessingResult(
            followup_id=followup_id,
            processed=True,
            status=FollowupStatus.SENT,
            sent_message_id=message_id,
        )

    async def _track_outbound(self, record: FollowupRecord, text: str) -> None:
        """Point the patient's conversation at this followup (best effort)"""
        if self.conversations is None:
            return

        try:
            state = await self.conversations.get_or_create(
                record.patient_id, record.phone_number, ConversationContext.REMINDER_CONFIRMATION
            )
            await self.conversations.set_context(
                state.id,
                ConversationContext.REMINDER_CONFIRMATION,
                related_entity_id=record.id,
                related_entity_type=RelatedEntityType.FOLLOWUP,
                expected_response_type=ExpectedResponseType.CONFIRMATION,
                state_data={"reminder_id": record.reminder_id, "followup_type": record.followup_type.value},
            )
            await self.conversations.add_message(
                state.id, text, MessageDirection.OUTBOUND, MessageType.REMINDER
            )
        except FollowupEngineError as e:
            logger.warning(f"Could not update conversation for followup {record.id}: {e}")

    # ------------------------------------------------------------------
    # Responses, cancellation, retry, expiry
    # ------------------------------------------------------------------

    async def record_response(self, record: FollowupRecord, response_text: str, confirmed: bool) -> bool:
        """
        Store a patient reply on a followup.

        Confirmed replies close the followup (stage COMPLETED); anything else
        marks it responded. Returns False if the record changed concurrently.
        """
        previous_status = record.status.value
        record.response = response_text
        record.responded_at = now_utc()
        if confirmed:
            record.transition_to(FollowupStatus.CONFIRMED)
            record.stage = FollowupStage.COMPLETED
        else:
            record.transition_to(FollowupStatus.RESPONDED)

        written = await self.store.update(record, expected_status=previous_status)
        if not written:
            logger.warning(f"Followup {record.id} changed while recording response; reply not stored")
            return False

        await self.store.clear_awaiting(record.id)
        logger.info(f"Followup {record.id} -> {record.status.value}")
        return True

    async def _cancel_record(self, record: FollowupRecord) -> bool:
        if not record.can_transition_to(FollowupStatus.CANCELLED):
            logger.info(f"Followup {record.id} is {record.status.value}, nothing to cancel")
            await self.scheduler.dequeue(record.id)
            return False

        previous_status = record.status.value
        record.transition_to(FollowupStatus.CANCELLED)
        await self.store.update(record, expected_status=previous_status)
        await self.scheduler.dequeue(record.id)
        await self.store.clear_awaiting(record.id)
        return True

    async def cancel_followup(self, followup_id: str) -> bool:
        """Cancel one followup; cancelling a missing or finished record is a no-op"""
        record = await self.store.get(followup_id)
        if record is None:
            logger.warning(f"Followup {followup_id} not found for cancellation")
            await self.scheduler.dequeue(followup_id)
            return False

        cancelled = await self._cancel_record(record)
        if cancelled:
            logger.info(f"Cancelled followup {followup_id}")
        return cancelled

    async def cancel_followups_for_reminder(self, reminder_id: str) -> int:
        """Cancel every non-terminal followup of a reminder and clear its index"""
        cancelled = 0
        for followup_id in await self.store.reminder_followup_ids(reminder_id):
            if await self.cancel_followup(followup_id):
                cancelled += 1

        await self.store.clear_reminder_index(reminder_id)
        logger.info(f"Cancelled {cancelled} followups for reminder {reminder_id}")
        return cancelled

    async def retry_failed_followup(self, followup_id: str) -> datetime:
        """
        Manually put a failed followup back on the queue with backoff

        Returns:
            When the retry is due

        Raises:
            FollowupNotFoundError: record does not exist
            InvalidStatusTransitionError: record is not failed
            FollowupEngineError: retry limit reached
        """
        record = await self.store.get(followup_id)
        if record is None:
            raise FollowupNotFoundError(followup_id)

        if record.status == FollowupStatus.FAILED and not record.can_retry():
            raise FollowupEngineError(
                "Retry limit reached",
                followup_id=followup_id,
                retry_count=record.retry_count,
                max_retries=record.max_retries,
            )

        due_at = now_utc() + retry_delay(record.retry_count)
        record.transition_to(FollowupStatus.PENDING)
        record.error = None
        record.metadata["retry_due_at"] = due_at.isoformat()
        await self.store.update(record, expected_status=FollowupStatus.FAILED.value)
        await self.scheduler.enqueue(followup_id, due_at)

        logger.info(f"Retrying followup {followup_id} at {due_at.isoformat()} (retry {record.retry_count})")
        return due_at

    async def expire_stale_followups(self) -> int:
        """Expire sent followups whose response window has elapsed"""
        lock_token = await self.scheduler.acquire_driver_lock(
            EXPIRE_DRIVER_NAME, self.settings.driver_lock_ttl_seconds
        )
        if not lock_token:
            logger.info("Followup expiry already running elsewhere, skipping this cycle")
            return 0

        expired: List[str] = []
        cycle_now = now_utc()

        async def expire(followup_id: str) -> None:
            try:
                if await self._expire_one(followup_id):
                    expired.append(followup_id)
            except FollowupEngineError as e:
                logger.error(f"Failed to expire followup {followup_id}: {e}")

        try:
            await self._drain(lambda limit: self.store.awaiting_due(now=cycle_now, limit=limit), expire)
        finally:
            await self.scheduler.release_driver_lock(EXPIRE_DRIVER_NAME, lock_token)

        if expired:
            logger.info(f"Expired {len(expired)} unanswered followups")
        return len(expired)

    async def _expire_one(self, followup_id: str) -> bool:
        record = await self.store.get(followup_id)
        if record is None or record.status != FollowupStatus.SENT:
            await self.store.clear_awaiting(followup_id)
            return False

        record.transition_to(FollowupStatus.EXPIRED)
        record.stage = FollowupStage.EXPIRED
        written = await self.store.update(record, expected_status=FollowupStatus.SENT.value)
        await self.store.clear_awaiting(followup_id)
        return written

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_followup(self, followup_id: str) -> Optional[FollowupRecord]:
        return await self.store.get(followup_id)

    async def get_patient_followups(self, patient_id: str) -> List[FollowupRecord]:
        records = []
        for followup_id in await self.store.patient_followup_ids(patient_id):
            record = await self.store.get(followup_id)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.scheduled_at)

    async def get_followup_stats(self, patient_id: Optional[str] = None) -> Dict[str, int]:
        """Count followups per status (plus total), for one patient or all"""
        if patient_id is not None:
            followup_ids = await self.store.patient_followup_ids(patient_id)
        else:
            followup_ids = await self.store.all_followup_ids()

        stats = {status.value: 0 for status in FollowupStatus}
        stats["total"] = 0
        for followup_id in followup_ids:
            record = await self.store.get(followup_id)
            if record is None:
                continue
            stats[record.status.value] += 1
            stats["total"] += 1
        return stats
