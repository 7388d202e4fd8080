"""
Engine settings loaded from the environment (.env supported via python-dotenv)
"""
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineSettings:
    """Tunables for the followup engine and its periodic drivers"""
    followup_ttl_days: int = 7
    followup_batch_limit: int = 100
    response_window_hours: int = 24
    conversation_ttl_hours: int = 24
    conversation_retention_days: int = 7
    driver_lock_ttl_seconds: int = 300
    claim_ttl_seconds: int = 120

    # Messaging channel (Fonnte WhatsApp gateway)
    fonnte_api_url: str = "https://api.fonnte.com/send"
    fonnte_token: Optional[str] = None
    messaging_mock: bool = False
    operator_phone: Optional[str] = None
    escalation_history_limit: int = 500

    # Periodic trigger intervals
    process_interval_seconds: int = 60
    cleanup_interval_seconds: int = 900

    local_timezone: str = "Asia/Jakarta"
    key_prefix: str = "followup"
    conversation_prefix: str = "conversation"

    @property
    def followup_ttl(self) -> timedelta:
        return timedelta(days=self.followup_ttl_days)

    @property
    def response_window(self) -> timedelta:
        return timedelta(hours=self.response_window_hours)

    @property
    def conversation_ttl(self) -> timedelta:
        return timedelta(hours=self.conversation_ttl_hours)

    @property
    def conversation_retention(self) -> timedelta:
        """How long inactive states and their history stay readable"""
        return timedelta(days=self.conversation_retention_days)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "EngineSettings":
        """Build settings from environment variables, loading .env first"""
        load_dotenv(env_file)
        return cls(
            followup_ttl_days=int(os.getenv("FOLLOWUP_TTL_DAYS", "7")),
            followup_batch_limit=int(os.getenv("FOLLOWUP_BATCH_LIMIT", "100")),
            response_window_hours=int(os.getenv("FOLLOWUP_RESPONSE_WINDOW_HOURS", "24")),
            conversation_ttl_hours=int(os.getenv("CONVERSATION_TTL_HOURS", "24")),
            conversation_retention_days=int(os.getenv("CONVERSATION_RETENTION_DAYS", "7")),
            driver_lock_ttl_seconds=int(os.getenv("DRIVER_LOCK_TTL_SECONDS", "300")),
            claim_ttl_seconds=int(os.getenv("FOLLOWUP_CLAIM_TTL_SECONDS", "120")),
            fonnte_api_url=os.getenv("FONNTE_API_URL", "https://api.fonnte.com/send"),
            fonnte_token=os.getenv("FONNTE_TOKEN"),
            messaging_mock=_env_bool("MESSAGING_MOCK"),
            operator_phone=os.getenv("OPERATOR_PHONE"),
            escalation_history_limit=int(os.getenv("ESCALATION_HISTORY_LIMIT", "500")),
            process_interval_seconds=int(os.getenv("PROCESS_INTERVAL_SECONDS", "60")),
            cleanup_interval_seconds=int(os.getenv("CLEANUP_INTERVAL_SECONDS", "900")),
            local_timezone=os.getenv("LOCAL_TIMEZONE", "Asia/Jakarta"),
        )
