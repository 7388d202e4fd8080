"""
Conversation state repositories

Key layout (prefix defaults to "conversation"):
    {prefix}:state:{id}         hash   one ConversationState
    {prefix}:messages:{id}      list   JSON ConversationMessage, oldest first
    {prefix}:patient:{pid}      set    state ids for a patient
    {prefix}:phone:{phone}      set    state ids for a phone number
    {prefix}:active             zset   active state ids scored by expires_at
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from config.settings import EngineSettings
from shared.exceptions import FollowupNotFoundError, TransientStoreError
from utils.time_utils import now_utc, to_epoch_millis

from .models import ConversationMessage, ConversationState

logger = logging.getLogger("conversation-store")


class ConversationRepository(ABC):
    """Persistence for conversation states and their message history"""

    @abstractmethod
    async def create_state(self, state: ConversationState) -> None:
        pass

    @abstractmethod
    async def get_state(self, state_id: str) -> Optional[ConversationState]:
        pass

    @abstractmethod
    async def save_state(self, state: ConversationState) -> None:
        """Write context fields only; message counters and expiry are left untouched"""

    @abstractmethod
    async def states_for_patient(self, patient_id: str) -> List[ConversationState]:
        pass

    @abstractmethod
    async def states_for_phone(self, phone_number: str) -> List[ConversationState]:
        pass

    @abstractmethod
    async def append_message(
        self,
        message: ConversationMessage,
        expires_at: datetime,
    ) -> None:
        """
        Append to history and bump the state's counters in one step.

        Raises FollowupNotFoundError if the state does not exist.
        """

    @abstractmethod
    async def history(self, state_id: str, limit: int = 50) -> List[ConversationMessage]:
        """Most recent `limit` messages, in creation order"""

    @abstractmethod
    async def expired_active_ids(self, now: Optional[datetime] = None, limit: int = 500) -> List[str]:
        pass

    @abstractmethod
    async def remove_from_active(self, state_id: str) -> None:
        pass


class RedisConversationRepository(ConversationRepository):
    def __init__(self, redis_client: redis.Redis, settings: Optional[EngineSettings] = None):
        self.redis = redis_client
        self.settings = settings or EngineSettings()
        self.prefix = self.settings.conversation_prefix
        self.retention_seconds = int(self.settings.conversation_retention.total_seconds())

    def _state_key(self, state_id: str) -> str:
        return f"{self.prefix}:state:{state_id}"

    def _messages_key(self, state_id: str) -> str:
        return f"{self.prefix}:messages:{state_id}"

    def _patient_key(self, patient_id: str) -> str:
        return f"{self.prefix}:patient:{patient_id}"

    def _phone_key(self, phone_number: str) -> str:
        return f"{self.prefix}:phone:{phone_number}"

    @property
    def _active_key(self) -> str:
        return f"{self.prefix}:active"

    def _queue_state_write(self, pipe, state: ConversationState) -> None:
        state_key = self._state_key(state.id)
        pipe.hset(state_key, mapping=state.to_redis_hash())
        pipe.expire(state_key, self.retention_seconds)
        if state.is_active:
            pipe.zadd(self._active_key, {state.id: to_epoch_millis(state.expires_at)})
        else:
            pipe.zrem(self._active_key, state.id)

    async def create_state(self, state: ConversationState) -> None:
        patient_key = self._patient_key(state.patient_id)
        phone_key = self._phone_key(state.phone_number)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                self._queue_state_write(pipe, state)
                pipe.sadd(patient_key, state.id)
                pipe.expire(patient_key, self.retention_seconds)
                pipe.sadd(phone_key, state.id)
                pipe.expire(phone_key, self.retention_seconds)
                await pipe.execute()
        except RedisError as e:
            raise TransientStoreError("create_state", e) from e

    async def get_state(self, state_id: str) -> Optional[ConversationState]:
        try:
            data = await self.redis.hgetall(self._state_key(state_id))
        except RedisError as e:
            raise TransientStoreError("get_state", e) from e
        return ConversationState.from_redis_hash(data) if data else None

    async def save_state(self, state: ConversationState) -> None:
        state_key = self._state_key(state.id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(state_key, mapping=state.to_context_hash())
                pipe.expire(state_key, self.retention_seconds)
                if not state.is_active:
                    pipe.zrem(self._active_key, state.id)
                await pipe.execute()
        except RedisError as e:
            raise TransientStoreError("save_state", e) from e

    async def _load_states(self, index_key: str, operation: str) -> List[ConversationState]:
        try:
            state_ids = await self.redis.smembers(index_key)
            states = []
            for state_id in state_ids:
                data = await self.redis.hgetall(self._state_key(state_id))
                if data:
                    states.append(ConversationState.from_redis_hash(data))
            return states
        except RedisError as e:
            raise TransientStoreError(operation, e) from e

    async def states_for_patient(self, patient_id: str) -> List[ConversationState]:
        return await self._load_states(self._patient_key(patient_id), "states_for_patient")

    async def states_for_phone(self, phone_number: str) -> List[ConversationState]:
        return await self._load_states(self._phone_key(phone_number), "states_for_phone")

    async def append_message(self, message: ConversationMessage, expires_at: datetime) -> None:
        state_id = message.conversation_state_id
        state_key = self._state_key(state_id)
        messages_key = self._messages_key(state_id)
        try:
            is_active = await self.redis.hget(state_key, "is_active")
            if is_active is None:
                raise FollowupNotFoundError(state_id, entity_type="conversation")

            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.rpush(messages_key, message.to_json())
                pipe.expire(messages_key, self.retention_seconds)
                pipe.hincrby(state_key, "message_count", 1)
                pipe.hset(state_key, mapping={
                    "last_message": message.message,
                    "last_message_at": message.created_at.isoformat(),
                    "updated_at": message.created_at.isoformat(),
                    "expires_at": expires_at.isoformat(),
                })
                pipe.expire(state_key, self.retention_seconds)
                if is_active == "1":
                    pipe.zadd(self._active_key, {state_id: to_epoch_millis(expires_at)})
                await pipe.execute()
        except RedisError as e:
            raise TransientStoreError("append_message", e) from e

    async def history(self, state_id: str, limit: int = 50) -> List[ConversationMessage]:
        try:
            raw_messages = await self.redis.lrange(self._messages_key(state_id), -limit, -1)
        except RedisError as e:
            raise TransientStoreError("history", e) from e
        return [ConversationMessage.from_json(raw) for raw in raw_messages]

    async def expired_active_ids(self, now: Optional[datetime] = None, limit: int = 500) -> List[str]:
        # Strictly before now
        cutoff = to_epoch_millis(now or now_utc()) - 1
        try:
            return list(await self.redis.zrangebyscore(self._active_key, 0, cutoff, start=0, num=limit))
        except RedisError as e:
            raise TransientStoreError("expired_active_ids", e) from e

    async def remove_from_active(self, state_id: str) -> None:
        try:
            await self.redis.zrem(self._active_key, state_id)
        except RedisError as e:
            raise TransientStoreError("remove_from_active", e) from e


class InMemoryConversationRepository(ConversationRepository):
    """Dict-backed repository for tests and the CLI's --memory mode"""

    def __init__(self):
        self._states: Dict[str, Dict[str, str]] = {}
        self._messages: Dict[str, List[ConversationMessage]] = {}
        self._lock = asyncio.Lock()

    async def create_state(self, state: ConversationState) -> None:
        async with self._lock:
            self._states[state.id] = state.to_redis_hash()
            self._messages.setdefault(state.id, [])

    async def get_state(self, state_id: str) -> Optional[ConversationState]:
        async with self._lock:
            data = self._states.get(state_id)
            return ConversationState.from_redis_hash(dict(data)) if data else None

    async def save_state(self, state: ConversationState) -> None:
        async with self._lock:
            data = self._states.setdefault(state.id, state.to_redis_hash())
            data.update(state.to_context_hash())

    async def _matching(self, field_name: str, value: str) -> List[ConversationState]:
        async with self._lock:
            return [
                ConversationState.from_redis_hash(dict(data))
                for data in self._states.values()
                if data.get(field_name) == value
            ]

    async def states_for_patient(self, patient_id: str) -> List[ConversationState]:
        return await self._matching("patient_id", patient_id)

    async def states_for_phone(self, phone_number: str) -> List[ConversationState]:
        return await self._matching("phone_number", phone_number)

    async def append_message(self, message: ConversationMessage, expires_at: datetime) -> None:
        state_id = message.conversation_state_id
        async with self._lock:
            data = self._states.get(state_id)
            if data is None:
                raise FollowupNotFoundError(state_id, entity_type="conversation")
            self._messages.setdefault(state_id, []).append(message)
            data["message_count"] = str(int(data.get("message_count") or 0) + 1)
            data["last_message"] = message.message
            data["last_message_at"] = message.created_at.isoformat()
            data["updated_at"] = message.created_at.isoformat()
            data["expires_at"] = expires_at.isoformat()

    async def history(self, state_id: str, limit: int = 50) -> List[ConversationMessage]:
        async with self._lock:
            return list(self._messages.get(state_id, [])[-limit:])

    async def expired_active_ids(self, now: Optional[datetime] = None, limit: int = 500) -> List[str]:
        cutoff = now or now_utc()
        async with self._lock:
            expired = []
            for state_id, data in self._states.items():
                if data.get("is_active") != "1":
                    continue
                if ConversationState.from_redis_hash(dict(data)).expires_at < cutoff:
                    expired.append(state_id)
            return expired[:limit]

    async def remove_from_active(self, state_id: str) -> None:
        # Active membership is derived from the stored hash
        return None
