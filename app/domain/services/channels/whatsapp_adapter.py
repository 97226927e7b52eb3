"""
WhatsApp Cloud API adapter over pywa.

Inbound: Meta webhook payloads, signed with HMAC-SHA256 in
``X-Hub-Signature-256``. Outbound: ``pywa_async.WhatsApp`` with the WhatsApp
circuit breaker. Read receipts are sent after the reply, best-effort.
"""
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from app.core.circuit_breaker import get_whatsapp_circuit_breaker
from app.core.config import settings
from app.core.exceptions import WhatsAppError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.domain.services.channels.base_adapter import BaseChannelAdapter, IncomingMessage

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"


def verify_signature(body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """Check Meta's HMAC-SHA256 signature of the raw payload"""
    if not app_secret or not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[7:], expected)


class WhatsAppCloudAdapter(BaseChannelAdapter):
    def __init__(
        self,
        phone_id: Optional[str] = None,
        token: Optional[str] = None,
        app_secret: Optional[str] = None,
        client: Any = None,
    ):
        self.phone_id = phone_id or settings.WHATSAPP_CLOUD_API_PHONE_ID
        self.token = token or settings.WHATSAPP_CLOUD_API_TOKEN
        self.app_secret = settings.WHATSAPP_CLOUD_API_APP_SECRET if app_secret is None else app_secret
        # Lazily created, keeps pywa out of import time
        self._client = client

    def _get_client(self):
        if self._client is None:
            from pywa_async import WhatsApp as PyWaClient

            self._client = PyWaClient(phone_id=self.phone_id, token=self.token)
        return self._client

    @property
    def provider_name(self) -> str:
        return "whatsapp"

    def parse_incoming(self, payload: dict[str, Any]) -> Optional[IncomingMessage]:
        # entry[] -> changes[] -> value.messages[]; one message per delivery in practice
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                if value.get("messaging_product") != "whatsapp":
                    continue
                contacts = value.get("contacts") or [{}]
                for message in value.get("messages") or []:
                    text = (message.get("text") or {}).get("body") if message.get("type") == "text" else None
                    if not text or not message.get("from"):
                        continue
                    sender = message["from"]
                    return IncomingMessage(
                        provider=self.provider_name,
                        external_id=sender,
                        sender_name=((contacts[0] or {}).get("profile") or {}).get("name") or sender,
                        text=text,
                        timestamp=datetime.fromtimestamp(
                            int(message.get("timestamp") or 0), tz=timezone.utc
                        ).replace(tzinfo=None),
                        phone=PhoneNumberValidator.normalize(sender),
                        message_id=message.get("id"),
                    )
        return None

    def verify(self, headers: Mapping[str, str], body: bytes) -> bool:
        signature = headers.get(SIGNATURE_HEADER) or headers.get("X-Hub-Signature-256")
        return verify_signature(body, signature, self.app_secret)

    async def send_text(self, external_id: str, text: str) -> None:
        client = self._get_client()

        async def _send() -> None:
            try:
                await client.send_message(to=external_id, text=text)
            except Exception as e:
                raise WhatsAppError(
                    "send_message failed",
                    details={"phone": PhoneNumberValidator.mask(external_id), "error": str(e)},
                ) from e

        await get_whatsapp_circuit_breaker().execute(_send)
        logger.debug("WhatsApp message sent", extra_data={
            "phone": PhoneNumberValidator.mask(external_id),
        })

    async def after_send(self, incoming: IncomingMessage) -> None:
        if not incoming.message_id:
            return
        try:
            await self._get_client().mark_message_as_read(message_id=incoming.message_id)
        except Exception as e:
            logger.warning("mark_message_as_read failed", extra_data={
                "message_id": incoming.message_id,
                "error": str(e),
            })
