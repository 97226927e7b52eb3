"""
Telegram Webhook Handler
"""
import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from app.core.logging import get_correlation_id, get_logger
from app.domain.services.channels import TelegramAdapter
from app.domain.services.message_processor import handle_incoming_message

logger = get_logger(__name__)

router = APIRouter()


def get_telegram_adapter() -> TelegramAdapter:
    return TelegramAdapter()


@router.post(
    "/telegram",
    summary="Webhook - Telegram",
    description=(
        "Receives Bot API updates. Text messages are answered asynchronously; "
        "other update types are acknowledged and ignored."
    ),
    responses={403: {"description": "Invalid secret token"}},
    tags=["Webhooks"],
)
async def telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    adapter: TelegramAdapter = Depends(get_telegram_adapter),
) -> dict:
    body = await request.body()
    if not adapter.verify(request.headers, body):
        logger.warning("Telegram webhook: invalid secret token")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("Telegram webhook: malformed payload")
        return {"ok": True, "status": "ignored"}

    incoming = adapter.parse_incoming(payload) if isinstance(payload, dict) else None
    if incoming is None:
        return {"ok": True, "status": "ignored"}

    logger.info(
        "Telegram update received",
        extra_data={"update_id": payload.get("update_id"), "chat_id": incoming.external_id},
    )
    background_tasks.add_task(handle_incoming_message, incoming, adapter, get_correlation_id())
    return {"ok": True, "status": "accepted"}
