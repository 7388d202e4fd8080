"""
Outbound patient messaging (WhatsApp)
"""

from .adapter import (
    FonnteMessagingAdapter,
    MessagingAdapter,
    MockMessagingAdapter,
    SendResult,
    create_messaging_adapter,
    format_whatsapp_number,
)

__all__ = [
    'FonnteMessagingAdapter',
    'MessagingAdapter',
    'MockMessagingAdapter',
    'SendResult',
    'create_messaging_adapter',
    'format_whatsapp_number',
]
