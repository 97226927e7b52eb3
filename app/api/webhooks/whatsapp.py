"""
WhatsApp Cloud API Webhook Handler

GET is Meta's registration handshake, POST carries signed message payloads.
"""
import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from app.core.config import settings
from app.core.logging import get_correlation_id, get_logger
from app.core.validation import PhoneNumberValidator
from app.domain.services.channels import WhatsAppCloudAdapter
from app.domain.services.message_processor import handle_incoming_message

logger = get_logger(__name__)

router = APIRouter()


def get_whatsapp_adapter() -> WhatsAppCloudAdapter:
    return WhatsAppCloudAdapter()


@router.get(
    "/whatsapp",
    summary="WhatsApp Webhook Verification",
    description="Meta verification handshake, echoes hub.challenge.",
    responses={403: {"description": "Verification failed"}},
    tags=["Webhooks"],
)
async def whatsapp_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> PlainTextResponse:
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
        and hub_verify_token == settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
    ):
        logger.info("WhatsApp webhook verified successfully")
        return PlainTextResponse(hub_challenge)

    logger.warning("WhatsApp webhook verification failed", extra_data={"hub_mode": hub_mode})
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post(
    "/whatsapp",
    summary="Webhook - WhatsApp Cloud API",
    description="Receives signed message payloads (X-Hub-Signature-256).",
    responses={403: {"description": "Invalid signature"}},
    tags=["Webhooks"],
)
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    adapter: WhatsAppCloudAdapter = Depends(get_whatsapp_adapter),
) -> dict:
    body = await request.body()
    if not adapter.verify(request.headers, body):
        logger.warning("WhatsApp webhook: invalid signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("WhatsApp webhook: malformed payload")
        return {"status": "ignored"}

    # status callbacks (delivered/read) carry no messages
    incoming = adapter.parse_incoming(payload) if isinstance(payload, dict) else None
    if incoming is None:
        return {"status": "ignored"}

    logger.info(
        "WhatsApp message received",
        extra_data={
            "from": PhoneNumberValidator.mask(incoming.external_id),
            "message_id": incoming.message_id,
        },
    )
    background_tasks.add_task(handle_incoming_message, incoming, adapter, get_correlation_id())
    return {"status": "accepted"}
