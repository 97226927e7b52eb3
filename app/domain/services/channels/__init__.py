"""
Messaging channel adapters
"""
from app.domain.services.channels.base_adapter import BaseChannelAdapter, IncomingMessage
from app.domain.services.channels.telegram_adapter import TelegramAdapter
from app.domain.services.channels.whatsapp_adapter import WhatsAppCloudAdapter

__all__ = [
    "BaseChannelAdapter",
    "IncomingMessage",
    "TelegramAdapter",
    "WhatsAppCloudAdapter",
]
