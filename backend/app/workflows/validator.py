# /app/workflows/validator.py

"""
Pure load-time validation for flow graphs.

Errors make a flow unusable (no start step, unparseable step configuration,
connections pointing nowhere). Warnings describe graphs that still run
safely: unreachable steps are simply never visited, and a step without an
outgoing connection completes the session.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No logging
"""

from collections import deque
from typing import List, Optional, Set, TypedDict

from app.models.flow import (
    Flow,
    Step,
    StepType,
    StartConfig,
    SendMessageConfig,
    QuestionSimpleConfig,
    ChoiceConfig,
    ConditionConfig,
    RotatorConfig,
    AssignConfig,
    MessageReceivedTrigger,
    TagAddedTrigger,
    ThirdPartyTrigger,
    CHOICE_STEP_TYPES,
)


class ValidationIssue(TypedDict):
    """A single problem found in a flow graph."""
    error_code: str
    step_id: Optional[str]
    message: str


class FlowValidationResult(TypedDict):
    """Result of validating a whole flow."""
    is_valid: bool
    errors: List[ValidationIssue]
    warnings: List[ValidationIssue]


def _issue(code: str, message: str, step_id: Optional[str] = None) -> ValidationIssue:
    return {"error_code": code, "step_id": step_id, "message": message}


def reachable_step_ids(flow: Flow) -> Set[str]:
    """Step ids reachable from the start step by following connections."""
    start = flow.start_step
    if start is None:
        return set()

    seen = {start.id}
    queue = deque([start.id])
    while queue:
        step_id = queue.popleft()
        for connection in flow.outgoing(step_id):
            if connection.target not in seen and flow.get_step(connection.target):
                seen.add(connection.target)
                queue.append(connection.target)
    return seen


def validate_trigger(step: Step) -> List[ValidationIssue]:
    """Checks that a start step's trigger carries what its kind needs to ever fire."""
    if not isinstance(step.parsed, StartConfig) or step.parsed.trigger is None:
        return []

    trigger = step.parsed.trigger
    issues = []
    if isinstance(trigger, MessageReceivedTrigger):
        if trigger.match_mode != "all" and not trigger.keywords:
            issues.append(_issue(
                "TRIGGER_WITHOUT_KEYWORDS",
                "Message trigger needs at least one keyword unless it matches all messages",
                step.id,
            ))
    elif isinstance(trigger, TagAddedTrigger):
        if not trigger.tag_id:
            issues.append(_issue("TRIGGER_WITHOUT_TAG", "Tag trigger needs a tag", step.id))
    elif isinstance(trigger, ThirdPartyTrigger):
        if not trigger.field_names:
            issues.append(_issue("TRIGGER_WITHOUT_FIELDS", "Third-party trigger needs at least one field", step.id))
    return issues


def validate_step(flow: Flow, step: Step) -> List[ValidationIssue]:
    """Type-specific checks for one step. Returns errors only."""
    if not step.is_valid:
        return [_issue("INVALID_STEP_CONFIG", step.config_error or "invalid configuration", step.id)]

    config = step.parsed
    issues: List[ValidationIssue] = []

    if step.type == StepType.START.value:
        issues.extend(validate_trigger(step))

    elif isinstance(config, SendMessageConfig):
        if config.media_kind is None and not config.text.strip():
            issues.append(_issue("EMPTY_MESSAGE", "Text message has no text", step.id))
        elif config.media_kind is not None and not config.has_usable_media:
            issues.append(_issue("MISSING_MEDIA", f"{config.media_kind} message has no uploaded file", step.id))

    elif isinstance(config, QuestionSimpleConfig):
        if not config.question_text.strip():
            issues.append(_issue("EMPTY_QUESTION", "Question has no text", step.id))

    elif isinstance(config, ChoiceConfig):
        if not config.options:
            issues.append(_issue("NO_OPTIONS", "Choice question needs at least one option", step.id))
        for option in config.options:
            if flow.connection_for_handle(step.id, option.id) is None:
                issues.append(_issue(
                    "OPTION_NO_NEXT_STEP",
                    f"Option '{option.label or option.id}' has no next step connected",
                    step.id,
                ))

    elif isinstance(config, ConditionConfig):
        if not config.conditions:
            issues.append(_issue("NO_CONDITIONS", "Condition needs at least one rule", step.id))

    elif isinstance(config, AssignConfig):
        if config.agent_type == "ai" and not config.agent_id:
            issues.append(_issue("AI_AGENT_REQUIRED", "AI assignment needs an agent", step.id))

    elif isinstance(config, RotatorConfig):
        if len(config.options) < 2:
            issues.append(_issue("ROTATOR_TOO_FEW_OPTIONS", "Rotator needs at least 2 options", step.id))

    return issues


def validate_flow(flow: Flow) -> FlowValidationResult:
    """
    Validate a flow graph as a whole.

    Args:
        flow: The parsed flow

    Returns:
        FlowValidationResult with is_valid=False when any error was found
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    start_steps = [s for s in flow.steps if s.type == StepType.START.value]
    if not start_steps:
        errors.append(_issue("NO_START_STEP", "Flow must have a start step"))
        return {"is_valid": False, "errors": errors, "warnings": warnings}
    if len(start_steps) > 1:
        errors.append(_issue("MULTIPLE_START_STEPS", "Flow must have exactly one start step"))

    step_ids = [s.id for s in flow.steps]
    duplicated = {sid for sid in step_ids if step_ids.count(sid) > 1}
    for sid in sorted(duplicated):
        errors.append(_issue("DUPLICATE_STEP_ID", f"Step id '{sid}' is used more than once", sid))

    seen_handles = set()
    for connection in flow.connections:
        if flow.get_step(connection.source) is None or flow.get_step(connection.target) is None:
            errors.append(_issue(
                "DANGLING_CONNECTION",
                f"Connection '{connection.id}' references a missing step",
                connection.source,
            ))
        if connection.source_handle:
            key = (connection.source, connection.source_handle)
            if key in seen_handles:
                errors.append(_issue(
                    "DUPLICATE_SOURCE_HANDLE",
                    f"Handle '{connection.source_handle}' is used by more than one connection",
                    connection.source,
                ))
            seen_handles.add(key)

    for step in flow.steps:
        errors.extend(validate_step(flow, step))

    reachable = reachable_step_ids(flow)
    for step in flow.steps:
        if step.id not in reachable:
            warnings.append(_issue("UNREACHABLE_STEP", f"Step '{step.id}' is not reachable from start", step.id))
        # assignment and hand-off steps legitimately end a branch
        if (
            step.type not in (StepType.ASSIGN_CONVERSATION.value, StepType.START_AUTOMATION.value)
            and step.type not in CHOICE_STEP_TYPES
            and not flow.outgoing(step.id)
        ):
            warnings.append(_issue("NO_OUTGOING_CONNECTION", f"Step '{step.id}' has no outgoing connection", step.id))

    return {"is_valid": not errors, "errors": errors, "warnings": warnings}
