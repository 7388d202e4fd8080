"""
Shared utilities package for the followup engine

Contains shared utilities used by multiple components:
- exceptions: Error hierarchy rooted at FollowupEngineError
- prompt_manager: YAML message templates (patient and operator texts)
"""

from .exceptions import (
    DispatchFailureError,
    FollowupEngineError,
    FollowupNotFoundError,
    FollowupSchedulingError,
    InvalidStatusTransitionError,
    TransientStoreError,
)
from .prompt_manager import PromptManager, prompt_manager

__all__ = [
    'DispatchFailureError',
    'FollowupEngineError',
    'FollowupNotFoundError',
    'FollowupSchedulingError',
    'InvalidStatusTransitionError',
    'TransientStoreError',
    'PromptManager',
    'prompt_manager',
]
