"""
Pytest configuration and fixtures for the followup engine tests
"""
import pytest
import pytest_asyncio
import redis
import redis.asyncio as aioredis
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from config.settings import EngineSettings
from conversation.state_machine import ConversationStateMachine
from conversation.store import InMemoryConversationRepository
from linking.escalation import EscalationService, InMemoryEscalationLog
from linking.linker import ConfirmationLinker
from messaging.adapter import MockMessagingAdapter
from scheduling.engine import FollowupEngine
from scheduling.memory import InMemoryFollowupScheduler, InMemoryFollowupStore
from scheduling.models import FollowupScheduleRequest, ReminderPriority, ReminderType
from shared.services import build_services


@pytest.fixture
def settings():
    """Default engine settings, independent of the environment"""
    return EngineSettings()


@pytest.fixture
def messaging():
    """Mock WhatsApp channel recording every send"""
    return MockMessagingAdapter()


@pytest.fixture
def followup_store(settings):
    return InMemoryFollowupStore(settings)


@pytest.fixture
def followup_scheduler():
    return InMemoryFollowupScheduler()


@pytest.fixture
def conversations(settings):
    """ConversationStateMachine over an in-memory repository"""
    return ConversationStateMachine(InMemoryConversationRepository(), settings)


@pytest.fixture
def escalation_log():
    return InMemoryEscalationLog()


@pytest.fixture
def escalations(escalation_log, messaging, settings):
    return EscalationService(escalation_log, messaging, settings)


@pytest.fixture
def engine(followup_store, followup_scheduler, messaging, settings, conversations):
    """FollowupEngine wired to in-memory backends"""
    return FollowupEngine(
        followup_store,
        followup_scheduler,
        messaging,
        settings=settings,
        conversations=conversations,
    )


@pytest.fixture
def linker(engine, messaging, escalations, conversations):
    return ConfirmationLinker(engine, messaging, escalations, conversations=conversations)


@pytest.fixture
def reminder_sent_at():
    """09:00 WIB on Jan 15, 2026"""
    return datetime(2026, 1, 15, 2, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def medication_request():
    """Sample medication reminder that has just been sent"""
    return FollowupScheduleRequest(
        patient_id="patient-001",
        reminder_id="reminder-001",
        phone_number="081234567890",
        patient_name="Budi",
        reminder_type=ReminderType.MEDICATION,
        reminder_title="Minum Tamoxifen",
        reminder_message="Waktunya minum obat Tamoxifen 20mg",
        priority=ReminderPriority.MEDIUM,
    )


@pytest.fixture
def mock_async_redis():
    """Mock redis.asyncio client; pipelines record their queued commands"""
    client = MagicMock(spec=aioredis.Redis)
    for name in ("hgetall", "hget", "hkeys", "hdel", "delete", "zadd", "zrem", "zscore",
                 "zcard", "zrangebyscore", "set", "smembers", "lrange", "aclose"):
        setattr(client, name, AsyncMock())

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    client.pipeline.return_value = pipe
    client.register_script.return_value = AsyncMock(return_value=1)
    return client


@pytest.fixture
def memory_services(messaging, settings):
    """Fully wired in-memory services (what the CLI's --memory mode uses)"""
    return build_services(settings=settings, memory=True, messaging=messaging)


@pytest.fixture
def redis_test_db():
    """
    Real Redis connection for integration tests.
    Uses database 15 to avoid conflicts with development data.
    """
    try:
        client = redis.Redis(host='localhost', port=6379, db=15, decode_responses=True)
        client.ping()  # Test connection

        # Clear the test database before each test
        client.flushdb()

        yield client

        # Clean up after test
        client.flushdb()
        client.close()

    except redis.ConnectionError:
        pytest.skip("Redis not available for integration tests")


@pytest_asyncio.fixture
async def async_redis_test_db(redis_test_db):
    """redis.asyncio client on the same test database"""
    client = aioredis.Redis(host='localhost', port=6379, db=15, decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def redis_services(async_redis_test_db, messaging, settings):
    """Services backed by the real test Redis and mock messaging"""
    services = build_services(settings=settings, redis_client=async_redis_test_db, messaging=messaging)
    yield services
