# /app/services/agent_delegate.py

import json
import logging
import re
from typing import Optional, Tuple, Dict, Any, List

from app.config import strings
from app.config.persona import HANDOFF_MARKER
from app.config.settings import settings
from app.models.agent import AIAgent, DelegateOutcome
from app.models.session import Session, SessionStatus
from app.services.ai_service import ai_service
from app.services.notification_service import notification_service
from app.utils.metrics import ai_turns_counter
from app.workflows.errors import CompletionError

# Runs one AI-agent turn for a session assigned to an AI agent: bounded
# history, turn counting against the agent's limit, and the hand-off protocol
# (user-visible text, then the marker, then a JSON payload for a human).

logger = logging.getLogger(__name__)

HISTORY_KEY = "__ai_history__"
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def split_handoff(reply: str) -> Tuple[str, Optional[str]]:
    """
    Split a raw completion at the hand-off marker.

    Returns:
        (user-visible text, payload text or None when there was no marker)
    """
    if HANDOFF_MARKER not in reply:
        return reply.strip(), None
    visible, _, payload = reply.partition(HANDOFF_MARKER)
    payload = _CODE_FENCE.sub("", payload.strip()).strip()
    return visible.strip(), payload


def parse_handoff_payload(payload_text: str) -> Optional[Dict[str, Any]]:
    """Parse the hand-off JSON. None when it is not valid JSON."""
    try:
        data = json.loads(payload_text)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return {"data": data}
    return data


class AgentDelegate:
    def __init__(self, ai=None, notifications=None, history_window: Optional[int] = None):
        self.ai = ai or ai_service
        self.notifications = notifications or notification_service
        self.history_window = history_window or settings.ai_history_window

    def _history(self, session: Session) -> List[Dict[str, str]]:
        history = session.variables.get(HISTORY_KEY) or []
        return list(history[-self.history_window * 2:])

    def _end_assignment(self, session: Session) -> None:
        session.status = SessionStatus.COMPLETED
        session.current_step_id = None
        session.assignee = None

    async def handle_turn(self, session: Session, agent: Optional[AIAgent], reply_text: str) -> Tuple[DelegateOutcome, Session]:
        """
        Forward one inbound message to the agent.

        The returned session is a copy reflecting the turn; on completion
        failure it is returned unchanged so the turn can be retried.
        """
        if agent is None or not agent.is_active:
            logger.warning(f"Session {session.session_id} is assigned to a missing or inactive AI agent")
            ai_turns_counter.labels(outcome="agent_unavailable").inc()
            return DelegateOutcome(reply=strings.AI_FALLBACK_REPLY, failed=True), session

        turn = session.ai_turn_count + 1
        closing = turn >= agent.max_turns
        history = self._history(session)

        try:
            result = await self.ai.complete(agent, session.session_id, reply_text, history, closing)
        except CompletionError as e:
            logger.error(f"AI turn failed for session {session.session_id}: {e}")
            ai_turns_counter.labels(outcome="failed").inc()
            return DelegateOutcome(reply=strings.AI_FALLBACK_REPLY, failed=True), session

        visible, payload_text = split_handoff(result.reply)

        updated = session.model_copy(deep=True)
        updated.ai_turn_count = turn
        history = history + [
            {"role": "user", "content": reply_text},
            {"role": "assistant", "content": visible},
        ]
        updated.variables[HISTORY_KEY] = history[-self.history_window * 2:]

        if payload_text is None and not closing:
            ai_turns_counter.labels(outcome="continued").inc()
            return DelegateOutcome(reply=visible), updated

        payload = parse_handoff_payload(payload_text) if payload_text is not None else None
        raw = None
        if payload is None:
            # malformed JSON, or the turn limit ended the conversation without a payload
            raw = payload_text if payload_text is not None else visible
            if payload_text is not None:
                logger.warning(f"Malformed hand-off JSON from agent {agent.id} in session {session.session_id}")

        self._end_assignment(updated)
        ai_turns_counter.labels(outcome="handoff" if payload_text is not None else "closed").inc()
        await self.notifications.notify_handoff(updated, agent, payload=payload, raw=raw)

        return DelegateOutcome(reply=visible, ended=True, handoff_payload=payload, handoff_raw=raw), updated


# Globally accessible instance
agent_delegate = AgentDelegate()
