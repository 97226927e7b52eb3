"""
Telegram Bot API adapter
"""
import hmac
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from app.core.circuit_breaker import get_telegram_circuit_breaker
from app.core.config import settings
from app.core.exceptions import TelegramError
from app.core.logging import get_logger
from app.domain.services.channels.base_adapter import BaseChannelAdapter, IncomingMessage

logger = get_logger(__name__)

SECRET_TOKEN_HEADER = "x-telegram-bot-api-secret-token"
# Telegram rejects messages longer than this
MAX_MESSAGE_LENGTH = 4096


class TelegramAdapter(BaseChannelAdapter):
    def __init__(
        self,
        bot_token: Optional[str] = None,
        secret_token: Optional[str] = None,
        base_url: str = "https://api.telegram.org",
    ):
        self.bot_token = settings.TELEGRAM_BOT_TOKEN if bot_token is None else bot_token
        self.secret_token = (
            settings.TELEGRAM_WEBHOOK_SECRET_TOKEN if secret_token is None else secret_token
        )
        self.base_url = base_url

    @property
    def provider_name(self) -> str:
        return "telegram"

    def parse_incoming(self, payload: dict[str, Any]) -> Optional[IncomingMessage]:
        message = payload.get("message")
        if not isinstance(message, dict) or not message.get("text"):
            return None

        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        if chat.get("id") is None:
            return None

        full_name = " ".join(
            part for part in (sender.get("first_name"), sender.get("last_name")) if part
        )
        contact = message.get("contact") or {}

        return IncomingMessage(
            provider=self.provider_name,
            external_id=str(chat["id"]),
            sender_name=sender.get("username") or full_name or "Telegram",
            text=message["text"],
            timestamp=datetime.fromtimestamp(
                int(message.get("date") or 0), tz=timezone.utc
            ).replace(tzinfo=None),
            phone=contact.get("phone_number"),
            message_id=str(message["message_id"]) if message.get("message_id") is not None else None,
        )

    def verify(self, headers: Mapping[str, str], body: bytes) -> bool:
        """
        Compare ``X-Telegram-Bot-Api-Secret-Token`` with the configured secret.

        Without a configured secret every request is accepted (a warning is
        logged at startup).
        """
        if not self.secret_token:
            return True
        received = headers.get(SECRET_TOKEN_HEADER) or headers.get("X-Telegram-Bot-Api-Secret-Token")
        if not received:
            return False
        return hmac.compare_digest(received, self.secret_token)

    async def send_text(self, external_id: str, text: str) -> None:
        if not self.bot_token:
            raise TelegramError("TELEGRAM_BOT_TOKEN not configured", details={"chat_id": external_id})

        url = f"{self.base_url}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": external_id, "text": text[:MAX_MESSAGE_LENGTH]}

        async def _send():
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json=payload, timeout=30.0)
                if response.status_code != 200:
                    raise TelegramError.from_response("sendMessage", response)

        await get_telegram_circuit_breaker().execute(_send)
        logger.debug("Telegram message sent", extra_data={"chat_id": external_id})
