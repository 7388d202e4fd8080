"""
Exceptions for the followup automation engine

Each error carries the context needed for logging. Store errors raised by
redis-py are wrapped in TransientStoreError at the store boundary so the
engine never has to import redis exception types.
"""
from typing import Any, Iterable, Optional


class FollowupEngineError(Exception):
    """Base exception for the followup engine"""

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class FollowupNotFoundError(FollowupEngineError):
    """Followup record (or conversation state) does not exist"""

    def __init__(self, entity_id: str, entity_type: str = "followup") -> None:
        self.entity_id = entity_id
        self.entity_type = entity_type
        super().__init__(
            f"{entity_type.capitalize()} '{entity_id}' not found",
            entity_id=entity_id,
            entity_type=entity_type,
        )


class TransientStoreError(FollowupEngineError):
    """Key-value store unreachable or returned an error; safe to retry"""

    def __init__(self, operation: str, error: Exception) -> None:
        self.operation = operation
        self.original_error = error
        super().__init__(
            f"Store operation '{operation}' failed: {error}",
            operation=operation,
        )


class DispatchFailureError(FollowupEngineError):
    """Messaging channel rejected the message or timed out"""

    def __init__(self, phone_number: str, error_message: Optional[str] = None) -> None:
        self.phone_number = phone_number
        self.error_message = error_message
        super().__init__(
            f"Failed to send message: {error_message or 'Unknown error'}",
            phone_number=phone_number,
        )


class InvalidStatusTransitionError(FollowupEngineError):
    """Attempted to move a followup backwards or out of a terminal status"""

    def __init__(
        self,
        followup_id: str,
        current_status: str,
        new_status: str,
        allowed_transitions: Iterable[str],
    ) -> None:
        self.followup_id = followup_id
        self.current_status = current_status
        self.new_status = new_status
        self.allowed_transitions = sorted(allowed_transitions)
        super().__init__(
            f"Cannot transition followup from '{current_status}' to '{new_status}'. "
            f"Allowed transitions: {self.allowed_transitions}",
            followup_id=followup_id,
        )


class FollowupSchedulingError(FollowupEngineError):
    """Multi-stage scheduling failed; created stages were rolled back"""

    def __init__(
        self,
        reminder_id: str,
        error: Exception,
        rolled_back: Optional[list] = None,
    ) -> None:
        self.reminder_id = reminder_id
        self.original_error = error
        self.rolled_back = rolled_back or []
        super().__init__(
            f"Failed to schedule followups for reminder '{reminder_id}': {error}",
            reminder_id=reminder_id,
            rolled_back=len(self.rolled_back),
        )
