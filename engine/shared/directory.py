"""
Read-only lookups of reminder and patient master data

The engine never owns reminders; it only needs enough of one to schedule
its followups. Deployments plug in their own directory (database, API);
InMemoryReminderDirectory serves tests and the operator CLI.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from scheduling.models import FollowupScheduleRequest, ReminderPriority, ReminderType

logger = logging.getLogger("reminder-directory")


@dataclass
class ReminderInfo:
    """A sent reminder as seen by the followup engine"""
    reminder_id: str
    patient_id: str
    phone_number: str
    patient_name: str
    reminder_type: ReminderType = ReminderType.MEDICATION
    title: str = ""
    message: str = ""
    priority: ReminderPriority = ReminderPriority.MEDIUM
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_schedule_request(self) -> FollowupScheduleRequest:
        return FollowupScheduleRequest(
            patient_id=self.patient_id,
            reminder_id=self.reminder_id,
            phone_number=self.phone_number,
            patient_name=self.patient_name,
            reminder_type=self.reminder_type,
            reminder_title=self.title,
            reminder_message=self.message,
            priority=self.priority,
            metadata=dict(self.metadata),
        )


class ReminderDirectory(ABC):
    """Abstract read-only reminder lookup"""

    @abstractmethod
    async def get_reminder(self, reminder_id: str) -> Optional[ReminderInfo]:
        pass


class InMemoryReminderDirectory(ReminderDirectory):
    def __init__(self):
        self._reminders: Dict[str, ReminderInfo] = {}

    def add(self, reminder: ReminderInfo) -> None:
        self._reminders[reminder.reminder_id] = reminder

    async def get_reminder(self, reminder_id: str) -> Optional[ReminderInfo]:
        reminder = self._reminders.get(reminder_id)
        if reminder is None:
            logger.debug(f"Reminder {reminder_id} not in directory")
        return reminder
