# /app/services/whatsapp_service.py

import httpx
import logging
import tenacity
from typing import Optional, List, Tuple

from app.config.settings import settings
from app.utils.circuit_breaker import RedisCircuitBreaker
from app.services.cache_service import cache_service
from app.utils.alerting import alerting_service
from app.utils.metrics import message_counter
from app.utils.phone import whatsapp_recipient

logger = logging.getLogger(__name__)

MAX_REPLY_BUTTONS = 3
BUTTON_TITLE_MAX = 20


class WhatsAppService:
    def __init__(self, access_token: str, phone_id: str, base_url: Optional[str] = None):
        self.access_token = access_token
        self.phone_id = phone_id
        self.http_client = httpx.AsyncClient(timeout=15.0)
        self.base_url = base_url or settings.graph_api_base_url
        self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: dict, phone_id: Optional[str] = None) -> Optional[str]:
        """Generic method to send a request to the WhatsApp messages API. Returns the wamid."""
        to_phone = payload.get("to", "unknown")
        try:
            if not payload.get("to"):
                logger.error(f"send_whatsapp_request_invalid_phone: {payload.get('to')}")
                return None

            url = f"{self.base_url}/{phone_id or self.phone_id}/messages"
            headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code == 200:
                response_data = response.json()
                message_id = response_data.get("messages", [{}])[0].get("id")
                message_counter.labels(status="sent", message_type=payload.get("type", "unknown")).inc()
                logger.info(f"WhatsApp message sent to {to_phone}, wamid: {message_id}")
                return message_id

            error_data = response.json()
            error_message = (error_data.get("error") or {}).get("message", "Unknown error")
            message_counter.labels(status="failed", message_type=payload.get("type", "unknown")).inc()
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            if response.status_code == 401:
                await alerting_service.send_critical_alert("WhatsApp authentication failed", {"error": "Invalid access token"})
            return None
        except Exception as e:
            message_counter.labels(status="error", message_type=payload.get("type", "unknown")).inc()
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            await alerting_service.send_critical_alert("WhatsApp send message unexpected error", {"phone": to_phone, "error": str(e)})
            return None

    def _base_payload(self, to_phone: str) -> dict:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": whatsapp_recipient(to_phone),
        }

    async def send_message(self, to_phone: str, message: str, phone_id: Optional[str] = None) -> Optional[str]:
        """Sends a plain text message."""
        payload = self._base_payload(to_phone)
        payload["type"] = "text"
        payload["text"] = {"body": message[:4096]}
        return await self.send_whatsapp_request(payload, phone_id)

    async def send_interactive_buttons(
        self,
        to_phone: str,
        body: str,
        buttons: List[Tuple[str, str]],
        phone_id: Optional[str] = None,
    ) -> Optional[str]:
        """Sends a message with up to 3 reply buttons given as (id, title) pairs."""
        payload = self._base_payload(to_phone)
        payload["type"] = "interactive"
        payload["interactive"] = {
            "type": "button",
            "body": {"text": body[:1024]},
            "action": {"buttons": [
                {"type": "reply", "reply": {"id": button_id, "title": title[:BUTTON_TITLE_MAX]}}
                for button_id, title in buttons[:MAX_REPLY_BUTTONS]
            ]},
        }
        return await self.send_whatsapp_request(payload, phone_id)

    async def send_media(
        self,
        to_phone: str,
        media_type: str,
        media_url: Optional[str] = None,
        media_id: Optional[str] = None,
        caption: Optional[str] = None,
        file_name: Optional[str] = None,
        phone_id: Optional[str] = None,
    ) -> Optional[str]:
        """Sends an image, video, audio or document by uploaded media id or public link."""
        if not media_id and not media_url:
            logger.error(f"send_media called without media for {to_phone}")
            return None

        media: dict = {"id": media_id} if media_id else {"link": media_url}
        # audio messages cannot carry a caption
        if caption and media_type != "audio":
            media["caption"] = caption[:1024]
        if file_name and media_type == "document":
            media["filename"] = file_name

        payload = self._base_payload(to_phone)
        payload["type"] = media_type
        payload[media_type] = media
        return await self.send_whatsapp_request(payload, phone_id)

    async def send_template_message(
        self,
        to: str,
        template_name: str,
        body_params: list,
        language: Optional[str] = None,
        phone_id: Optional[str] = None,
    ) -> Optional[str]:
        """Sends a pre-approved WhatsApp message template with body parameters."""
        components = []
        if body_params:
            components.append({
                "type": "body",
                "parameters": [{"type": "text", "text": str(p)} for p in body_params]
            })

        payload = {
            "messaging_product": "whatsapp",
            "to": whatsapp_recipient(to),
            "type": "template",
            "template": {
                "name": template_name,
                "language": {"code": language or settings.template_language},
                "components": components
            }
        }
        return await self.send_whatsapp_request(payload, phone_id)

    async def cleanup(self):
        await self.http_client.aclose()

# Globally accessible instance
whatsapp_service = WhatsAppService(
    settings.whatsapp_access_token,
    settings.whatsapp_phone_id,
)
