"""
Messaging Adapter - Abstracts the outbound WhatsApp channel for easier testing

The engine only needs "send this text to this phone number". Production uses
the Fonnte HTTP gateway; tests and dry runs use the mock adapter.
"""
import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from shared.exceptions import DispatchFailureError

logger = logging.getLogger("messaging-adapter")


@dataclass
class SendResult:
    """Result of a send attempt"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def format_whatsapp_number(phone_number: str) -> str:
    """
    Normalise an Indonesian phone number to the gateway format (62xxxxxxxxx)
    """
    cleaned = re.sub(r"\D", "", phone_number)

    if cleaned.startswith("08"):
        cleaned = "628" + cleaned[2:]
    elif cleaned.startswith("8") and len(cleaned) >= 9:
        cleaned = "62" + cleaned
    elif not cleaned.startswith("62"):
        cleaned = "62" + cleaned

    return cleaned


class MessagingAdapter(ABC):
    """Abstract interface for the patient messaging channel"""

    @abstractmethod
    async def send(self, phone_number: str, text: str) -> SendResult:
        """Send a text message; delivery is at-least-once"""
        pass

    async def send_or_raise(self, phone_number: str, text: str) -> SendResult:
        """Send, raising DispatchFailureError when the channel rejects the message"""
        result = await self.send(phone_number, text)
        if not result.success:
            raise DispatchFailureError(phone_number, result.error)
        return result

    async def close(self) -> None:
        pass


class FonnteMessagingAdapter(MessagingAdapter):
    """WhatsApp delivery through the Fonnte HTTP API (aiohttp)"""

    def __init__(
        self,
        token: Optional[str],
        api_url: str = "https://api.fonnte.com/send",
        timeout_seconds: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.token = token
        self.api_url = api_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

        if not token:
            logger.warning("Fonnte token not configured. WhatsApp messaging will be disabled.")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def send(self, phone_number: str, text: str) -> SendResult:
        if not self.token:
            return SendResult(success=False, error="Fonnte not configured")

        payload = {"target": format_whatsapp_number(phone_number), "message": text}
        headers = {"Authorization": self.token}

        try:
            session = await self._get_session()
            async with session.post(self.api_url, json=payload, headers=headers) as response:
                result = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Fonnte send to {phone_number} failed: {e}")
            return SendResult(success=False, error=str(e) or type(e).__name__)

        if not result.get("status"):
            reason = result.get("reason") or "Fonnte API error"
            logger.warning(f"Fonnte rejected message to {phone_number}: {reason}")
            return SendResult(success=False, error=reason)

        # Fonnte returns the message id as a list
        message_id = result.get("id")
        if isinstance(message_id, list):
            message_id = message_id[0] if message_id else None
        message_id = str(message_id) if message_id else f"fonnte_{int(time.time() * 1000)}"

        logger.info(f"Sent WhatsApp message {message_id} to {phone_number}")
        return SendResult(success=True, message_id=message_id)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class MockMessagingAdapter(MessagingAdapter):
    """Mock implementation for testing"""

    def __init__(self):
        self.sent_messages: List[Dict[str, Any]] = []
        self.should_fail = False
        self.failure_error = None
        self.raise_exception = False  # Simulate a transport crash instead of a rejection

    async def send(self, phone_number: str, text: str) -> SendResult:
        if self.should_fail:
            if self.raise_exception:
                raise ConnectionError(self.failure_error or "Mock transport failure")
            return SendResult(success=False, error=self.failure_error or "Mock send failure")

        message_id = f"mock-message-{len(self.sent_messages) + 1}"
        self.sent_messages.append({
            'id': message_id,
            'phone_number': phone_number,
            'text': text,
        })
        return SendResult(success=True, message_id=message_id)

    def messages_to(self, phone_number: str) -> List[str]:
        return [m['text'] for m in self.sent_messages if m['phone_number'] == phone_number]

    def reset(self):
        """Reset mock state"""
        self.sent_messages.clear()
        self.should_fail = False
        self.failure_error = None
        self.raise_exception = False


def create_messaging_adapter(mock: bool = False, settings=None) -> MessagingAdapter:
    """Factory function to create the messaging adapter"""
    if mock or (settings is not None and settings.messaging_mock):
        return MockMessagingAdapter()
    if settings is None:
        from config.settings import EngineSettings
        settings = EngineSettings.from_env()
    return FonnteMessagingAdapter(token=settings.fonnte_token, api_url=settings.fonnte_api_url)
