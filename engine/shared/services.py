"""
Wiring of the followup services

Everything is built from injected parts so tests, RQ jobs and the CLI can
choose Redis or in-memory backends and a real or mock messaging channel.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from config.redis import create_async_redis_connection
from config.settings import EngineSettings
from conversation.state_machine import ConversationStateMachine
from conversation.store import InMemoryConversationRepository, RedisConversationRepository
from linking.escalation import EscalationService, InMemoryEscalationLog, RedisEscalationLog
from linking.inquiry import InquiryClassifier, InquiryResponder
from linking.linker import ConfirmationLinker
from messaging.adapter import MessagingAdapter, create_messaging_adapter
from scheduling.engine import FollowupEngine
from scheduling.memory import InMemoryFollowupScheduler, InMemoryFollowupStore
from scheduling.scheduler import RedisFollowupScheduler
from scheduling.store import RedisFollowupStore
from utils.redis_atomic import AtomicRedisOperations

from .directory import ReminderDirectory

logger = logging.getLogger("followup-services")


@dataclass
class FollowupServices:
    settings: EngineSettings
    engine: FollowupEngine
    linker: ConfirmationLinker
    conversations: ConversationStateMachine
    escalations: EscalationService
    messaging: MessagingAdapter
    redis_client: Optional[Any] = None

    async def close(self) -> None:
        await self.messaging.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_services(
    settings: Optional[EngineSettings] = None,
    redis_client=None,
    memory: bool = False,
    messaging: Optional[MessagingAdapter] = None,
    directory: Optional[ReminderDirectory] = None,
    inquiry_classifier: Optional[InquiryClassifier] = None,
) -> FollowupServices:
    """
    Build the engine, linker and conversation state machine

    Args:
        settings: Engine settings (defaults to EngineSettings.from_env())
        redis_client: redis.asyncio client (created from env if omitted)
        memory: Use in-memory backends instead of Redis
        messaging: Messaging adapter (defaults to create_messaging_adapter)
        directory: Optional reminder master-data lookup
        inquiry_classifier: Optional classifier for open-ended replies
    """
    settings = settings or EngineSettings.from_env()
    messaging = messaging or create_messaging_adapter(settings=settings)

    if memory:
        store = InMemoryFollowupStore(settings)
        scheduler = InMemoryFollowupScheduler()
        conversation_repo = InMemoryConversationRepository()
        escalation_log = InMemoryEscalationLog(settings.escalation_history_limit)
        redis_client = None
    else:
        redis_client = redis_client or create_async_redis_connection()
        atomic_ops = AtomicRedisOperations(redis_client)
        store = RedisFollowupStore(redis_client, settings, atomic_ops)
        scheduler = RedisFollowupScheduler(redis_client, settings, atomic_ops)
        conversation_repo = RedisConversationRepository(redis_client, settings)
        escalation_log = RedisEscalationLog(redis_client, settings)

    conversations = ConversationStateMachine(conversation_repo, settings)
    engine = FollowupEngine(
        store,
        scheduler,
        messaging,
        settings=settings,
        conversations=conversations,
        directory=directory,
    )
    escalations = EscalationService(escalation_log, messaging, settings)
    linker = ConfirmationLinker(
        engine,
        messaging,
        escalations,
        conversations=conversations,
        inquiry=InquiryResponder(classifier=inquiry_classifier),
    )

    logger.debug(f"Built followup services ({'memory' if memory else 'redis'} backend)")
    return FollowupServices(
        settings=settings,
        engine=engine,
        linker=linker,
        conversations=conversations,
        escalations=escalations,
        messaging=messaging,
        redis_client=redis_client,
    )
