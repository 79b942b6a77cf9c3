# /app/services/notification_service.py

import json
import httpx
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from app.config import strings
from app.config.settings import settings
from app.models.agent import AIAgent
from app.models.session import Session
from app.services.whatsapp_service import whatsapp_service
from app.utils.alerting import alerting_service

# This service tells humans that a conversation needs them: a WhatsApp
# message to the admin phone for AI hand-offs, and transactional e-mail for
# assignment steps configured to send one.

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, admin_phone: Optional[str], email_api_url: Optional[str], email_api_key: Optional[str]):
        self.admin_phone = admin_phone
        self.email_api_url = email_api_url
        self.email_api_key = email_api_key
        self.http_client = httpx.AsyncClient(timeout=10.0) if email_api_url else None

    @staticmethod
    def build_handoff_lines(session: Session, agent: Optional[AIAgent], payload: Optional[Dict[str, Any]], raw: Optional[str]) -> List[str]:
        title = strings.HANDOFF_NOTIFICATION_TITLE if payload is not None else strings.HANDOFF_RAW_NOTIFICATION_TITLE
        lines = [
            title,
            f"📱 Contacto: {session.channel_address}",
        ]
        name = session.variables.get("name")
        if name:
            lines.append(f"👤 Nombre: {name}")
        if agent is not None:
            lines.append(f"🤖 Agente: {agent.name}")
        lines.append("")
        if payload is not None:
            for key, value in payload.items():
                rendered = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
                lines.append(f"• {key}: {rendered}")
        else:
            lines.append(raw or "")
        return lines

    async def notify_handoff(
        self,
        session: Session,
        agent: Optional[AIAgent] = None,
        payload: Optional[Dict[str, Any]] = None,
        raw: Optional[str] = None,
    ) -> bool:
        """
        Tell a human that an AI agent handed the conversation over.

        Exactly one notification is attempted per hand-off. When the agent's
        JSON could not be parsed, `raw` carries the unparsed text instead.
        """
        message = "\n".join(self.build_handoff_lines(session, agent, payload, raw))

        if not self.admin_phone:
            logger.warning(f"ADMIN_ALERT_PHONE not set; hand-off for {session.channel_address} only sent to alerting webhook")
            await alerting_service.send_alert("warning", "AI hand-off without admin phone", {
                "session_id": session.session_id,
                "message": message,
            })
            return False

        wamid = await whatsapp_service.send_message(self.admin_phone, message)
        if wamid is None:
            logger.error(f"Hand-off notification for session {session.session_id} could not be delivered")
            return False
        logger.info(f"Hand-off notification sent for session {session.session_id}")
        return True

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        """Send a transactional e-mail through the configured HTTP e-mail API."""
        if not self.http_client:
            logger.warning(f"E-mail API not configured; skipping e-mail to {to} ({subject})")
            return False
        try:
            response = await self.http_client.post(
                self.email_api_url,
                headers={"Authorization": f"Bearer {self.email_api_key}", "Content-Type": "application/json"},
                json={
                    "from": settings.email_from,
                    "to": to,
                    "subject": subject,
                    "html": body,
                    "sent_at": datetime.now(timezone.utc).isoformat(),
                },
            )
            if response.status_code >= 400:
                logger.error(f"E-mail to {to} failed: {response.status_code} - {response.text}")
                return False
            logger.info(f"E-mail sent to {to}: {subject}")
            return True
        except Exception as e:
            logger.error(f"E-mail to {to} failed: {e}")
            return False

    async def cleanup(self):
        if self.http_client:
            await self.http_client.aclose()


# Globally accessible instance
notification_service = NotificationService(
    settings.admin_alert_phone,
    settings.email_api_url,
    settings.email_api_key,
)
