"""
Per-patient conversation context and message history
"""

from .models import (
    ConversationContext,
    ConversationMessage,
    ConversationState,
    ExpectedResponseType,
    MessageDirection,
    MessageType,
    RelatedEntityType,
)
from .state_machine import ConversationStateMachine
from .store import (
    ConversationRepository,
    InMemoryConversationRepository,
    RedisConversationRepository,
)

__all__ = [
    'ConversationContext',
    'ConversationMessage',
    'ConversationState',
    'ExpectedResponseType',
    'MessageDirection',
    'MessageType',
    'RelatedEntityType',
    'ConversationStateMachine',
    'ConversationRepository',
    'InMemoryConversationRepository',
    'RedisConversationRepository',
]
