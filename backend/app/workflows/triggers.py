# /app/workflows/triggers.py

"""
Pure trigger matching: which active flows should start for an inbound event.

Matching is a plain function of (flows, event, prior-session lookup) so it can
be tested without any webhook plumbing. The caller decides what to do with an
already-active session using `is_trigger_keyword`.
"""

import logging
from typing import Callable, List, Optional, TypedDict

from app.models.events import InboundEvent
from app.models.flow import Flow, MessageReceivedTrigger, TagAddedTrigger, ThirdPartyTrigger

logger = logging.getLogger(__name__)

EVENT_TRIGGER_TYPES = {
    "message": MessageReceivedTrigger,
    "tag_added": TagAddedTrigger,
    "third_party": ThirdPartyTrigger,
}


class TriggerMatch(TypedDict):
    """A flow that should start, and where."""
    flow: Flow
    start_step_id: str


def normalize_text(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def trigger_matches_text(trigger: MessageReceivedTrigger, text: str) -> bool:
    """
    Keyword rule of a message trigger.

    `all` matches everything, `exact` is trimmed case-insensitive equality and
    `contains` is a case-insensitive substring test. Without keywords only
    `all` can match.
    """
    if trigger.match_mode == "all":
        return True
    message = normalize_text(text)
    keywords = [normalize_text(k) for k in trigger.keywords if normalize_text(k)]
    if not keywords:
        return False
    if trigger.match_mode == "exact":
        return any(message == keyword for keyword in keywords)
    return any(keyword in message for keyword in keywords)


def is_trigger_keyword(text: str, active_flows: List[Flow]) -> bool:
    """
    True when the text explicitly matches a keyword of some active flow.

    Catch-all (`all`) triggers are not keywords: treating them as such would
    restart every in-progress session on any reply.
    """
    if not normalize_text(text):
        return False
    for flow in active_flows:
        trigger = flow.trigger
        if not flow.is_active or not isinstance(trigger, MessageReceivedTrigger):
            continue
        if trigger.match_mode != "all" and trigger_matches_text(trigger, text):
            return True
    return False


def device_scope_allows(trigger, event: InboundEvent, enforce: bool, flow_id: str = "") -> bool:
    """Device-scoped triggers only fire for events received on that device."""
    if not trigger.device_id:
        return True
    if event.device_id:
        return event.device_id == trigger.device_id
    if enforce:
        return False
    logger.warning(
        f"Device scope not enforced for flow {flow_id}: event from {event.channel_address} carries no device id"
    )
    return True


def _event_matches(trigger, event: InboundEvent) -> bool:
    if event.kind == "message":
        return trigger_matches_text(trigger, event.text)
    if event.kind == "tag_added":
        return trigger.tag_id is None or trigger.tag_id == event.tag_id
    if event.kind == "third_party":
        return True
    return False


def match_triggers(
    event: InboundEvent,
    active_flows: List[Flow],
    has_prior_session: Callable[[str], bool],
    enforce_device_scope: bool = True,
    only_flow_id: Optional[str] = None,
) -> List[TriggerMatch]:
    """
    Decide which flows an inbound event starts.

    Args:
        event: The inbound event
        active_flows: Candidate flows; inactive ones are skipped
        has_prior_session: Whether (address, flow_id) already has a session of any status
        enforce_device_scope: Reject device-scoped triggers for events without a device id
        only_flow_id: Restrict matching to a single flow (third-party webhooks address one flow)

    Returns:
        Every matching flow with its start step id; possibly empty
    """
    trigger_type = EVENT_TRIGGER_TYPES.get(event.kind)
    matches: List[TriggerMatch] = []

    for flow in active_flows:
        if not flow.is_active:
            continue
        if only_flow_id is not None and flow.id != only_flow_id:
            continue
        trigger = flow.trigger
        if trigger is None or not isinstance(trigger, trigger_type):
            continue
        if not device_scope_allows(trigger, event, enforce_device_scope, flow.id):
            continue
        if trigger.once_per_contact and has_prior_session(flow.id):
            continue
        if not _event_matches(trigger, event):
            continue
        matches.append({"flow": flow, "start_step_id": flow.start_step.id})

    return matches
