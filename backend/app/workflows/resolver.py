# /app/workflows/resolver.py

"""
Pure reply-to-branch resolution for a session parked at an interactive step.

Resolving is idempotent: the same reply against the same step always yields
the same decision, so a re-delivered webhook cannot pick a different branch.
"""

from typing import Optional, TypedDict

from app.models.flow import Flow, ChoiceConfig, CHOICE_STEP_TYPES
from app.workflows.triggers import normalize_text

NO_MATCH = "no_match"
END_OF_FLOW = "end_of_flow"


class ReplyResolution(TypedDict):
    """
    Where a reply leads. next_step_id is None both when nothing matched
    (matched_by NO_MATCH) and when the step ends the flow (END_OF_FLOW).
    """
    next_step_id: Optional[str]
    matched_by: str
    option_id: Optional[str]


def _resolved(next_step_id: str, matched_by: str, option_id: Optional[str] = None) -> ReplyResolution:
    return {"next_step_id": next_step_id, "matched_by": matched_by, "option_id": option_id}


def resolve_reply(flow: Flow, step_id: str, raw_reply: Optional[str]) -> ReplyResolution:
    """
    Map a raw reply onto one of the step's outgoing connections.

    Order: option number (1..N), exact option id (structured replies),
    substring against handle or label in declaration order, then the single
    outgoing connection of a non-choice step. A step with no outgoing
    connections accepts any reply and ends the flow.
    """
    no_match: ReplyResolution = {"next_step_id": None, "matched_by": NO_MATCH, "option_id": None}
    step = flow.get_step(step_id)
    if step is None:
        return no_match

    outgoing = flow.outgoing(step_id)
    if not outgoing:
        return {"next_step_id": None, "matched_by": END_OF_FLOW, "option_id": None}

    reply = normalize_text(raw_reply)
    is_choice = step.type in CHOICE_STEP_TYPES
    options = step.parsed.options if isinstance(step.parsed, ChoiceConfig) else []

    if is_choice and reply.isdigit():
        index = int(reply)
        if 1 <= index <= len(options):
            option = options[index - 1]
            connection = flow.connection_for_handle(step_id, option.id)
            if connection is not None:
                return _resolved(connection.target, "option_index", option.id)

    if is_choice and raw_reply:
        for option in options:
            if option.id == raw_reply.strip():
                connection = flow.connection_for_handle(step_id, option.id)
                if connection is not None:
                    return _resolved(connection.target, "option_id", option.id)

    if reply:
        labels_by_handle = {o.id: normalize_text(o.label) for o in options}
        for connection in outgoing:
            candidates = [
                normalize_text(connection.source_handle),
                normalize_text(connection.condition_label),
                labels_by_handle.get(connection.source_handle or ""),
            ]
            if any(c and c in reply for c in candidates):
                return _resolved(connection.target, "keyword", connection.source_handle)

    if not is_choice and len(outgoing) == 1:
        return _resolved(outgoing[0].target, "single_connection")

    return no_match
