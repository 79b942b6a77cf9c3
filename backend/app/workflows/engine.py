# /app/workflows/engine.py

"""
Pure flow interpreter.

This module walks a flow graph from a given step and:
- Emits an ordered list of actions (sends, assignments) without performing them
- Parks the session at interactive steps and at wait steps
- Completes the session at terminal steps, on graph errors and on step overrun

All functions are:
- Pure (no side effects)
- Deterministic given the same clock and random source
- No database writes
- No AI calls
- No message sending
- No logging
"""

import random
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, TypedDict, NamedTuple
from zoneinfo import ZoneInfo

from app.config import strings
from app.config.settings import settings
from app.models.actions import (
    Action,
    Directive,
    SendMessageAction,
    SendInteractiveAction,
    SendMediaAction,
    SendTemplateAction,
    AssignConversationAction,
    SendEmailAction,
    InteractiveButton,
    ScheduleResume,
    StartFlow,
)
from app.models.flow import (
    Flow,
    Step,
    StepType,
    SendMessageConfig,
    QuestionSimpleConfig,
    ChoiceConfig,
    ChoiceOption,
    WaitConfig,
    ConditionConfig,
    AssignConfig,
    RotatorConfig,
    StartAutomationConfig,
    TemplateConfig,
)
from app.models.session import Session, SessionStatus, Assignee
from app.workflows.conditions import evaluate_condition

PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
BUTTON_TITLE_MAX = 20
ROTATOR_COUNTER_PREFIX = "__rotator__"

DIAGNOSTIC_STEP_LIMIT = "step_limit_exceeded"
DIAGNOSTIC_MISSING_STEP = "missing_step"
DIAGNOSTIC_INVALID_CONFIG = "invalid_step_config"
DIAGNOSTIC_MISSING_AGENT = "missing_ai_agent"


class RunResult(TypedDict):
    """Result of one interpreter run."""
    actions: List[Action]
    session: Session
    directive: Optional[Directive]
    executed_step_types: List[str]


class _Outcome(NamedTuple):
    next_step_id: Optional[str] = None
    stop: bool = False
    directive: Optional[Directive] = None


def render_template(text: Optional[str], variables: Dict[str, Any]) -> str:
    """Substitute {{ key }} placeholders. Unknown keys are left exactly as written."""
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_replace, text)


def choice_fallback_text(body: str, options: List[ChoiceOption]) -> str:
    """Numbered-list rendering of a choice question, used when buttons are unavailable."""
    lines = [body, ""] if body else []
    lines.extend(f"{index}. {option.label}" for index, option in enumerate(options, start=1))
    lines.extend(["", strings.CHOICE_FALLBACK_FOOTER])
    return "\n".join(lines)


class FlowInterpreter:
    """
    Executes one flow. Instances hold no per-session state and can be reused.

    Args:
        flow: The parsed flow graph
        max_steps: Maximum steps advanced in a single run
        default_agent_id: Human agent used by "assign to self" steps
        tz: Business timezone used by weekday/time conditions
        rng: Random source for weighted rotators
    """

    def __init__(
        self,
        flow: Flow,
        max_steps: Optional[int] = None,
        default_agent_id: Optional[str] = None,
        tz: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        self.flow = flow
        self.max_steps = max_steps or settings.max_steps_per_run
        self.default_agent_id = default_agent_id if default_agent_id is not None else settings.default_agent_id
        self.tz = ZoneInfo(tz or settings.timezone)
        self.rng = rng or random.Random()
        self._handlers = {
            StepType.START.value: self._run_start,
            StepType.SEND_MESSAGE.value: self._run_send_message,
            StepType.TEMPLATE.value: self._run_template,
            StepType.QUESTION_SIMPLE.value: self._run_question_simple,
            StepType.QUESTION_MULTIPLE.value: self._run_choice,
            StepType.MULTIPLE_CHOICE.value: self._run_choice,
            StepType.WAIT.value: self._run_wait,
            StepType.CONDITION.value: self._run_condition,
            StepType.ASSIGN_CONVERSATION.value: self._run_assign,
            StepType.ROTATOR.value: self._run_rotator,
            StepType.START_AUTOMATION.value: self._run_start_automation,
        }

    # ---------------- Public API ---------------- #

    def run(self, session: Session, from_step_id: Optional[str], now: Optional[datetime] = None) -> RunResult:
        """
        Walk the graph from `from_step_id` until the session blocks or completes.

        The input session is never mutated; the returned session is a copy.
        """
        now = now or datetime.now(timezone.utc)
        session = session.model_copy(deep=True)
        session.resume_at = None
        session.resume_step_id = None
        session.diagnostic = None

        actions: List[Action] = []
        executed: List[str] = []
        directive: Optional[Directive] = None
        step_id = from_step_id

        while True:
            if step_id is None:
                self._complete(session)
                break
            if len(executed) >= self.max_steps:
                self._complete(session, DIAGNOSTIC_STEP_LIMIT)
                break

            step = self.flow.get_step(step_id)
            if step is None:
                self._complete(session, DIAGNOSTIC_MISSING_STEP)
                break

            executed.append(step.type)
            handler = self._handlers.get(step.type)
            if handler is None or not step.is_valid:
                self._complete(session, DIAGNOSTIC_INVALID_CONFIG)
                break

            outcome = handler(step, session, actions, now)
            if outcome.stop:
                directive = outcome.directive
                break
            step_id = outcome.next_step_id

        session.updated_at = now
        return {
            "actions": actions,
            "session": session,
            "directive": directive,
            "executed_step_types": executed,
        }

    def continue_from_reply(
        self,
        session: Session,
        step_id: str,
        reply: str,
        next_step_id: Optional[str],
        option_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RunResult:
        """Record the answer given at an interactive step, then run from the resolved next step."""
        session = session.model_copy(deep=True)
        step = self.flow.get_step(step_id)
        answer = reply

        if step is not None and isinstance(step.parsed, ChoiceConfig) and option_id:
            for option in step.parsed.options:
                if option.id == option_id:
                    answer = option.label or reply
                    break

        session.variables["last_reply"] = answer
        if step is not None and isinstance(step.parsed, (QuestionSimpleConfig, ChoiceConfig)) and step.parsed.store_key:
            session.variables[step.parsed.store_key] = answer

        return self.run(session, next_step_id, now)

    # ---------------- Helpers ---------------- #

    def _complete(self, session: Session, diagnostic: Optional[str] = None):
        session.status = SessionStatus.COMPLETED
        session.current_step_id = None
        session.resume_at = None
        session.resume_step_id = None
        session.diagnostic = diagnostic

    def _park(self, session: Session, step: Step) -> None:
        session.status = SessionStatus.ACTIVE
        session.current_step_id = step.id

    def _next(self, step: Step) -> Optional[str]:
        outgoing = self.flow.outgoing(step.id)
        return outgoing[0].target if outgoing else None

    def _envelope(self, step: Step, session: Session, delay_seconds: int = 0) -> Dict[str, Any]:
        return {
            "to": session.channel_address,
            "device_id": session.device_id,
            "session_id": session.session_id,
            "step_id": step.id,
            "delay_seconds": delay_seconds,
        }

    # ---------------- Step handlers ---------------- #

    def _run_start(self, step, session, actions, now) -> _Outcome:
        return _Outcome(next_step_id=self._next(step))

    def _run_send_message(self, step, session, actions, now) -> _Outcome:
        config: SendMessageConfig = step.parsed
        envelope = self._envelope(step, session, config.delay_seconds)
        text = render_template(config.text, session.variables)

        if config.media_kind and config.has_usable_media:
            caption = render_template(config.caption or config.text, session.variables) or None
            actions.append(SendMediaAction(
                media_type=config.media_kind,
                media_url=config.media_url if not config.media_id else None,
                media_id=config.media_id,
                caption=caption,
                file_name=config.file_name,
                **envelope,
            ))
        elif text:
            actions.append(SendMessageAction(text=text, **envelope))

        return _Outcome(next_step_id=self._next(step))

    def _run_template(self, step, session, actions, now) -> _Outcome:
        config: TemplateConfig = step.parsed
        actions.append(SendTemplateAction(
            template_name=config.template_name,
            language=config.language,
            body_params=[render_template(v, session.variables) for v in config.variables],
            **self._envelope(step, session),
        ))
        return _Outcome(next_step_id=self._next(step))

    def _run_question_simple(self, step, session, actions, now) -> _Outcome:
        config: QuestionSimpleConfig = step.parsed
        actions.append(SendMessageAction(
            text=render_template(config.question_text, session.variables),
            **self._envelope(step, session),
        ))
        self._park(session, step)
        return _Outcome(stop=True)

    def _run_choice(self, step, session, actions, now) -> _Outcome:
        config: ChoiceConfig = step.parsed
        body = render_template(config.message, session.variables)
        options = [
            ChoiceOption(id=o.id, label=render_template(o.label, session.variables))
            for o in config.options
        ]
        actions.append(SendInteractiveAction(
            body=body,
            buttons=[InteractiveButton(id=o.id, title=o.label[:BUTTON_TITLE_MAX]) for o in options],
            fallback_text=choice_fallback_text(body, options),
            **self._envelope(step, session),
        ))
        self._park(session, step)
        return _Outcome(stop=True)

    def _run_wait(self, step, session, actions, now) -> _Outcome:
        config: WaitConfig = step.parsed
        due_at = now + timedelta(seconds=config.seconds)
        resume_step_id = self._next(step)
        self._park(session, step)
        session.resume_at = due_at
        session.resume_step_id = resume_step_id
        return _Outcome(stop=True, directive=ScheduleResume(
            due_at=due_at, wait_step_id=step.id, resume_step_id=resume_step_id,
        ))

    def _run_condition(self, step, session, actions, now) -> _Outcome:
        config: ConditionConfig = step.parsed
        met = evaluate_condition(config, session.variables, now.astimezone(self.tz))
        handles = ("cumple", "true") if met else ("no_cumple", "false")

        for connection in self.flow.outgoing(step.id):
            if connection.source_handle in handles or connection.condition_label in handles:
                return _Outcome(next_step_id=connection.target)
        return _Outcome(next_step_id=self._next(step))

    def _run_assign(self, step, session, actions, now) -> _Outcome:
        config: AssignConfig = step.parsed
        agent_id = config.agent_id
        if config.assign_to_self or (not agent_id and config.agent_type == "human"):
            agent_id = self.default_agent_id

        if config.agent_type == "ai" and not agent_id:
            self._complete(session, DIAGNOSTIC_MISSING_AGENT)
            return _Outcome(stop=True)

        envelope = self._envelope(step, session)
        if config.send_email and config.admin_email:
            actions.append(SendEmailAction(
                email=config.admin_email,
                subject=strings.ASSIGNMENT_EMAIL_SUBJECT,
                body=strings.ASSIGNMENT_EMAIL_BODY.format(address=session.channel_address, flow_name=self.flow.name),
                **envelope,
            ))
        actions.append(AssignConversationAction(assignee_type=config.agent_type, assignee_id=agent_id, **envelope))

        session.assignee = Assignee(type=config.agent_type, id=agent_id)
        session.ai_turn_count = 0

        if config.agent_type == "ai":
            # the AI delegate owns every following inbound message
            self._park(session, step)
            return _Outcome(stop=True)
        return _Outcome(next_step_id=self._next(step))

    def _run_rotator(self, step, session, actions, now) -> _Outcome:
        config: RotatorConfig = step.parsed
        if not config.options:
            return _Outcome(next_step_id=self._next(step))

        if config.mode == "sequential":
            key = f"{ROTATOR_COUNTER_PREFIX}{step.id}"
            counter = int(session.variables.get(key, 0) or 0)
            chosen = config.options[counter % len(config.options)]
            session.variables[key] = counter + 1
        else:
            weights = [max(o.weight, 0) for o in config.options]
            if sum(weights) <= 0:
                weights = [1] * len(config.options)
            chosen = self.rng.choices(config.options, weights=weights, k=1)[0]

        connection = self.flow.connection_for_handle(step.id, chosen.id)
        if connection is None:
            return _Outcome(next_step_id=self._next(step))
        return _Outcome(next_step_id=connection.target)

    def _run_start_automation(self, step, session, actions, now) -> _Outcome:
        config: StartAutomationConfig = step.parsed
        self._complete(session)
        return _Outcome(stop=True, directive=StartFlow(flow_id=config.flow_id))
