# /app/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any
from datetime import datetime

from app.config.settings import settings

# This utility posts operational alerts (failed sends, session conflicts,
# AI outages, hand-offs nobody can receive) to an external webhook.

logger = logging.getLogger(__name__)

class AlertingService:
    def __init__(self, webhook_url: Optional[str]):
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    async def send_alert(self, severity: str, error: str, context: Dict[str, Any]):
        if not self.client:
            logger.debug(f"Alerting disabled, dropping {severity} alert: {error}")
            return
        try:
            alert_data = {
                "severity": severity, "service": "funnelchat-flow-runtime",
                "error": error, "context": context, "timestamp": datetime.utcnow().isoformat(),
                "environment": settings.environment
            }
            await self.client.post(self.webhook_url, json=alert_data)
        except Exception as e:
            logger.error(f"Failed to send {severity} alert: {e}")

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        await self.send_alert("critical", error, context)

    async def cleanup(self):
        if self.client:
            await self.client.aclose()

# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url)
