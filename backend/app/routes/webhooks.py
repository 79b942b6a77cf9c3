# /app/routes/webhooks.py

import json
import asyncio
import structlog
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from app.config.settings import settings
from app.models.events import InboundEvent
from app.utils.dependencies import verify_webhook_signature
from app.utils.request_utils import get_remote_address
from app.services import security_service
from app.services.flow_runtime import flow_runtime
from app.utils.metrics import response_time_histogram
from app.utils.phone import normalize_phone
from app.utils.rate_limiter import limiter

# This file defines the webhook endpoints that receive data from external
# services: WhatsApp Cloud API messages and third-party integrations. Every
# accepted event is handed to the flow runtime in the background so the
# provider gets its 200 right away.

router = APIRouter(
    tags=["Webhooks"]
)
integrations_router = APIRouter(
    tags=["Integrations"]
)

log = structlog.get_logger(__name__)

ADDRESS_KEYS = ("channel_address", "phone", "telefono", "whatsapp", "address")

# Keeps references to in-flight runtime tasks so they are not garbage collected
_background_tasks = set()


def _schedule(event: InboundEvent) -> None:
    task = asyncio.create_task(flow_runtime.handle_inbound_event(event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _contact_names(value: Dict[str, Any]) -> Dict[str, str]:
    names = {}
    for contact in value.get("contacts", []):
        wa_id = contact.get("wa_id")
        name = (contact.get("profile") or {}).get("name")
        if wa_id and name:
            names[wa_id] = name
    return names


def parse_whatsapp_message(message: Dict[str, Any], value: Dict[str, Any]) -> Optional[InboundEvent]:
    """
    Turn one entry of `value.messages` into an InboundEvent.

    Button and list replies carry their id as `reply_id` and their title as
    `text`. Returns None for messages without a sender.
    """
    sender = message.get("from")
    if not sender:
        return None

    message_type = message.get("type")
    text = ""
    reply_id = None

    if message_type == "text":
        text = (message.get("text") or {}).get("body", "")
    elif message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        reply_id = reply.get("id")
        text = reply.get("title", "")
    elif message_type == "button":
        # quick-reply button on a template message
        button = message.get("button") or {}
        reply_id = button.get("payload")
        text = button.get("text", "")
    elif message_type in ("image", "video", "document"):
        text = (message.get(message_type) or {}).get("caption", "")

    metadata = value.get("metadata") or {}
    return InboundEvent(
        channel_address=normalize_phone(sender),
        kind="message",
        text=text,
        reply_id=reply_id,
        device_id=metadata.get("phone_number_id"),
        contact_name=_contact_names(value).get(sender),
        contact_id=sender,
        message_id=message.get("id"),
    )


def parse_whatsapp_payload(data: Dict[str, Any]) -> List[InboundEvent]:
    events = []
    for entry in data.get("entry", []):
        for change in entry.get("changes", []):
            if change.get("field") != "messages":
                log.debug("Ignoring non-message change", change=change)
                continue
            value = change.get("value", {})
            for status_data in value.get("statuses", []):
                log.debug("Delivery status", wamid=status_data.get("id"), status=status_data.get("status"))
            for message in value.get("messages", []):
                event = parse_whatsapp_message(message, value)
                if event is not None:
                    events.append(event)
    return events


# --- WhatsApp Webhooks ---

@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")

@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Receives WhatsApp messages and hands each one to the flow runtime."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.warning("Webhook body is not valid JSON.")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        client_ip = get_remote_address(request)
        if not await security_service.rate_limiter.check_ip_rate_limit(client_ip, limit=settings.rate_limit_per_minute, window=60):
            log.warning("Rate limit exceeded for IP", client_ip=client_ip)
            return JSONResponse({"status": "rate_limited"}, status_code=429)

        events = parse_whatsapp_payload(data)
        scheduled = 0
        for event in events:
            if not await security_service.rate_limiter.check_address_rate_limit(
                event.channel_address, limit=settings.address_rate_limit_per_minute, window=60
            ):
                log.warning("Rate limit exceeded for address; message dropped", address=event.channel_address)
                continue
            log.info("Processing incoming message", address=event.channel_address, message_id=event.message_id)
            _schedule(event)
            scheduled += 1

        return JSONResponse({"status": "success", "events": scheduled})


# --- Third-party integrations ---

@integrations_router.post("/integrations/{trigger_id}/webhook")
async def handle_integration_webhook(trigger_id: str, request: Request):
    """
    Starts the flow `trigger_id` for the contact named in a third-party payload.
    The whole JSON body is merged into the new session's variables.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=422, detail="Payload must be a JSON object")

    address = next((str(payload[k]) for k in ADDRESS_KEYS if payload.get(k)), None)
    if not address or not normalize_phone(address):
        raise HTTPException(status_code=422, detail="Payload carries no contact phone")

    event = InboundEvent(
        channel_address=normalize_phone(address),
        kind="third_party",
        trigger_id=trigger_id,
        contact_name=payload.get("name"),
        device_id=payload.get("device_id"),
        payload=payload,
    )
    log.info("Integration webhook received", trigger_id=trigger_id, address=event.channel_address)
    _schedule(event)
    return JSONResponse({"status": "accepted"})
