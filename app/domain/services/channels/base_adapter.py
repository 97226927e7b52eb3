"""
Base channel adapter.

Every messaging channel (Telegram, WhatsApp Cloud API) implements this
interface. The message processor depends only on it, never on a concrete
channel.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional


@dataclass
class IncomingMessage:
    """A normalized inbound text message"""

    provider: str
    external_id: str
    sender_name: str
    text: str
    timestamp: datetime
    phone: Optional[str] = None
    message_id: Optional[str] = None


class BaseChannelAdapter(ABC):
    """
    Uniform interface for one messaging channel.

    Each implementation owns:
    - webhook authenticity checks
    - payload parsing into ``IncomingMessage``
    - outbound delivery (HTTP / SDK) behind its circuit breaker
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider key stored on ``UserAccount.provider``"""

    @abstractmethod
    def parse_incoming(self, payload: dict[str, Any]) -> Optional[IncomingMessage]:
        """
        Extract a text message from a webhook payload.

        Returns None for anything that is not a text message (status updates,
        stickers, edits).
        """

    @abstractmethod
    def verify(self, headers: Mapping[str, str], body: bytes) -> bool:
        """Authenticity check of an inbound webhook request"""

    @abstractmethod
    async def send_text(self, external_id: str, text: str) -> None:
        """
        Send a text message.

        Raises:
            ExternalServiceException subclass on delivery failure.
        """

    async def after_send(self, incoming: IncomingMessage) -> None:
        """Post-send hook (e.g. read receipts). Best-effort, no-op by default."""
        return None
