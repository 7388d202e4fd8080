"""
RQ tasks driving the followup engine

Each job builds the async services, runs one engine operation with
asyncio.run and returns a summary string for the RQ result.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from rq.decorators import job

from config.redis import create_redis_connection

logger = logging.getLogger("followup-tasks")

QUEUE_NAME = "followups"

# Redis connection for RQ
redis_conn = create_redis_connection()

T = TypeVar("T")


def _run_with_services(operation: Callable[..., Awaitable[T]]) -> T:
    """Build services, run one async operation, always close connections"""
    from shared.services import build_services

    async def runner() -> T:
        services = build_services()
        try:
            return await operation(services)
        finally:
            await services.close()

    return asyncio.run(runner())


@job(QUEUE_NAME, connection=redis_conn, timeout=300)
def process_pending_followups_job() -> str:
    """
    RQ task: send every due followup once

    Returns:
        Summary of the processing cycle
    """
    try:
        results = _run_with_services(lambda s: s.engine.process_pending_followups())
    except Exception as e:
        error_msg = f"Followup processing cycle failed: {e}"
        logger.error(error_msg, exc_info=True)
        return error_msg

    sent = sum(1 for r in results if r.sent_message_id)
    failed = sum(1 for r in results if not r.processed)
    result_msg = f"Processed {len(results)} followups: {sent} sent, {failed} failed"
    logger.info(result_msg)
    return result_msg


@job(QUEUE_NAME, connection=redis_conn, timeout=120)
def expire_stale_followups_job() -> str:
    """RQ task: expire sent followups whose response window has passed"""
    try:
        expired = _run_with_services(lambda s: s.engine.expire_stale_followups())
    except Exception as e:
        error_msg = f"Followup expiry failed: {e}"
        logger.error(error_msg, exc_info=True)
        return error_msg

    return f"Expired {expired} followups"


@job(QUEUE_NAME, connection=redis_conn, timeout=120)
def cleanup_expired_conversations_job() -> str:
    """RQ task: deactivate conversation states past their expiry"""
    try:
        cleaned = _run_with_services(lambda s: s.conversations.cleanup_expired())
    except Exception as e:
        error_msg = f"Conversation cleanup failed: {e}"
        logger.error(error_msg, exc_info=True)
        return error_msg

    return f"Deactivated {cleaned} expired conversations"


@job(QUEUE_NAME, connection=redis_conn, timeout=60)
def link_reply_job(patient_id: str, text: str, phone_number: Optional[str] = None) -> str:
    """
    RQ task: link an inbound patient reply (queued by the webhook path)

    Args:
        patient_id: Patient who sent the reply
        text: Reply text
        phone_number: Sender phone, used for the acknowledgment
    """
    try:
        result = _run_with_services(
            lambda s: s.linker.link_confirmation_to_reminder(patient_id, text, phone_number)
        )
    except Exception as e:
        error_msg = f"Linking reply from patient {patient_id} failed: {e}"
        logger.error(error_msg, exc_info=True)
        return error_msg

    if not result.success:
        return f"Reply from patient {patient_id} not linked: {result.error}"
    if not result.matched:
        return f"No pending followup for patient {patient_id}"
    return f"Linked reply to followup {result.followup_id} ({result.classification.type.value})"
