# /app/services/action_dispatcher.py

import asyncio
import logging
from typing import List

from app.config import strings
from app.models.actions import (
    Action,
    SendMessageAction,
    SendInteractiveAction,
    SendMediaAction,
    SendTemplateAction,
    AssignConversationAction,
    SendEmailAction,
)
from app.services.whatsapp_service import whatsapp_service, MAX_REPLY_BUTTONS
from app.services.notification_service import notification_service
from app.utils.metrics import actions_dispatched_counter

# Performs the side effects the interpreter asked for. Each action is tried
# once; a failure is logged and counted but never stops the rest of the batch
# and never rolls back the session.

logger = logging.getLogger(__name__)


class ActionDispatcher:
    def __init__(self, whatsapp=None, notifications=None, honor_delays: bool = True):
        self.whatsapp = whatsapp or whatsapp_service
        self.notifications = notifications or notification_service
        self.honor_delays = honor_delays

    async def dispatch(self, action: Action) -> bool:
        """Perform one action. Returns True when it was delivered."""
        try:
            if self.honor_delays and action.delay_seconds:
                await asyncio.sleep(action.delay_seconds)
            delivered = await self._perform(action)
        except Exception as e:
            logger.error(f"Dispatch of {action.type} to {action.to} raised: {e}", exc_info=True)
            delivered = False

        actions_dispatched_counter.labels(action_type=action.type, status="success" if delivered else "failed").inc()
        if not delivered:
            logger.warning(f"Action {action.type} for session {action.session_id} (step {action.step_id}) was not delivered")
        return delivered

    async def dispatch_all(self, actions: List[Action]) -> List[bool]:
        """Dispatch in order. One result per action."""
        return [await self.dispatch(action) for action in actions]

    async def _perform(self, action: Action) -> bool:
        phone_id = action.device_id

        if isinstance(action, SendMessageAction):
            return await self.whatsapp.send_message(action.to, action.text, phone_id=phone_id) is not None

        if isinstance(action, SendInteractiveAction):
            if action.buttons and len(action.buttons) <= MAX_REPLY_BUTTONS:
                wamid = await self.whatsapp.send_interactive_buttons(
                    action.to, action.body, [(b.id, b.title) for b in action.buttons], phone_id=phone_id
                )
                if wamid is not None:
                    return True
                logger.warning(f"Interactive buttons failed for {action.to}; sending numbered list instead")
            return await self.whatsapp.send_message(action.to, action.fallback_text, phone_id=phone_id) is not None

        if isinstance(action, SendMediaAction):
            wamid = await self.whatsapp.send_media(
                action.to, action.media_type,
                media_url=action.media_url, media_id=action.media_id,
                caption=action.caption, file_name=action.file_name, phone_id=phone_id,
            )
            if wamid is not None:
                return True
            fallback = action.caption or strings.MEDIA_FALLBACK
            await self.whatsapp.send_message(action.to, fallback, phone_id=phone_id)
            return False

        if isinstance(action, SendTemplateAction):
            wamid = await self.whatsapp.send_template_message(
                action.to, action.template_name, action.body_params, language=action.language, phone_id=phone_id
            )
            return wamid is not None

        if isinstance(action, AssignConversationAction):
            # ownership is already recorded on the session; nothing is sent to the contact
            logger.info(f"Conversation {action.to} assigned to {action.assignee_type} agent {action.assignee_id}")
            return True

        if isinstance(action, SendEmailAction):
            return await self.notifications.send_email(action.email, action.subject, action.body)

        logger.error(f"Unknown action type: {getattr(action, 'type', action)}")
        return False


# Globally accessible instance
action_dispatcher = ActionDispatcher()
