# /app/services/flow_runtime.py

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TypedDict

from app.config import strings
from app.config.settings import settings
from app.models.actions import Action, SendMessageAction, ScheduleResume, StartFlow
from app.models.events import InboundEvent
from app.models.flow import Flow, StepType
from app.models.session import Session, SessionStatus
from app.services.action_dispatcher import action_dispatcher
from app.services.agent_delegate import agent_delegate
from app.services.cache_service import cache_service
from app.services.flow_repository import flow_repository
from app.services.session_store import session_store
from app.utils.alerting import alerting_service
from app.utils.metrics import (
    flows_triggered_counter,
    steps_executed_counter,
    sessions_completed_counter,
    reply_resolution_counter,
    session_conflicts_counter,
    wait_resumes_counter,
)
from app.utils.phone import normalize_phone
from app.workflows.engine import FlowInterpreter, RunResult
from app.workflows.errors import FlowNotFoundError, SessionConflictError, SessionNotFoundError
from app.workflows.resolver import NO_MATCH, resolve_reply
from app.workflows.triggers import is_trigger_keyword, match_triggers, normalize_text

# The inbound-event pipeline: reset command, session lookup, AI delegate or
# reply resolution, trigger matching, interpreter run, compare-and-swap
# persist under the address lock, then best-effort dispatch once the lock is
# released. Events for one address are serialized by the address lock; the
# compare-and-swap guards against other workers.

log = structlog.get_logger(__name__)

MAX_CHAINED_FLOWS = 5

# Keeps references to delayed dispatch batches so they are not garbage collected
_background_dispatches = set()


class RuntimeOutcome(TypedDict):
    """What happened to one inbound event or runtime call."""
    status: str
    session_ids: List[str]
    actions: List[Dict[str, Any]]


class PendingOutcome(TypedDict):
    """A committed result whose actions have not been dispatched yet."""
    status: str
    session_ids: List[str]
    actions: List[Action]


def _pending(status: str, session_ids: Optional[List[str]] = None, actions: Optional[List[Action]] = None) -> PendingOutcome:
    return {"status": status, "session_ids": list(session_ids or []), "actions": list(actions or [])}


def _outcome(status: str, session_ids: Optional[List[str]] = None, actions: Optional[List[Action]] = None) -> RuntimeOutcome:
    return {
        "status": status,
        "session_ids": session_ids or [],
        "actions": [a.model_dump(mode="json") for a in actions or []],
    }


def is_reset_command(text: str) -> bool:
    return normalize_text(text) in strings.RESET_PHRASES


class FlowRuntime:
    def __init__(self, store=None, flows=None, dispatcher=None, delegate=None, cache=None):
        self.store = store or session_store
        self.flows = flows or flow_repository
        self.dispatcher = dispatcher or action_dispatcher
        self.delegate = delegate or agent_delegate
        self.cache = cache or cache_service

    def interpreter(self, flow: Flow) -> FlowInterpreter:
        return FlowInterpreter(flow)

    async def _deliver(self, pending: PendingOutcome) -> RuntimeOutcome:
        """
        Dispatch the actions of a committed result. Called after the address
        lock is released; a batch carrying delays is sent from a background
        task so the caller never waits on the sleeps.
        """
        actions = pending["actions"]
        if actions:
            if any(action.delay_seconds for action in actions):
                task = asyncio.create_task(self.dispatcher.dispatch_all(actions))
                _background_dispatches.add(task)
                task.add_done_callback(_background_dispatches.discard)
            else:
                await self.dispatcher.dispatch_all(actions)
        return _outcome(pending["status"], pending["session_ids"], actions)

    # ---------------- Inbound events ---------------- #

    async def handle_inbound_event(self, event: InboundEvent) -> RuntimeOutcome:
        """Entry point for every inbound message, tag change or third-party payload."""
        address = normalize_phone(event.channel_address)
        if not address:
            log.warning("Inbound event without a usable address", raw_address=event.channel_address)
            return _outcome("ignored")
        event = event.model_copy(update={"channel_address": address})

        if event.message_id and await self.cache.is_duplicate(f"{address}:{event.message_id}", settings.dedupe_ttl_seconds):
            log.info("Duplicate inbound event ignored", address=address, message_id=event.message_id)
            return _outcome("duplicate")

        try:
            async with self.cache.address_lock(address):
                pending = await self._handle_locked(event)
        except SessionConflictError as e:
            session_conflicts_counter.labels(operation="inbound").inc()
            log.error("Session kept changing while handling event", address=address, error=str(e))
            await alerting_service.send_critical_alert("Session compare-and-swap retries exhausted", {"address": address})
            return _outcome("conflict")
        return await self._deliver(pending)

    async def _handle_locked(self, event: InboundEvent) -> PendingOutcome:
        address = event.channel_address

        if event.kind == "message" and is_reset_command(event.text):
            return await self._reset_locked(address, event.device_id)

        active_flows = await self.flows.list_active()

        if event.kind == "message":
            session = await self.store.find(address)
            if session is not None and session.is_active:
                if not is_trigger_keyword(event.text, active_flows):
                    return await self._continue(session, event)
                completed = await self.store.complete_active(address)
                sessions_completed_counter.labels(reason="restarted").inc()
                log.info("Trigger keyword restarts conversation", address=address, completed_sessions=completed)

        prior = set()
        for flow in active_flows:
            trigger = flow.trigger
            if trigger is not None and trigger.once_per_contact and await self.store.has_session(address, flow.id):
                prior.add(flow.id)

        matches = match_triggers(
            event,
            active_flows,
            lambda flow_id: flow_id in prior,
            enforce_device_scope=settings.enforce_device_scope,
            only_flow_id=event.trigger_id if event.kind == "third_party" else None,
        )
        if not matches:
            log.info("No flow matched inbound event", address=address, kind=event.kind)
            return _pending("no_match")

        pending = _pending("started")
        for match in matches:
            flows_triggered_counter.labels(trigger_type=event.kind).inc()
            log.info("Flow triggered", flow_id=match["flow"].id, flow_name=match["flow"].name, address=address)
            started = await self._start(match["flow"], address, event=event, start_step_id=match["start_step_id"])
            pending["session_ids"].extend(started["session_ids"])
            pending["actions"].extend(started["actions"])
        return pending

    # ---------------- Starting flows ---------------- #

    def _initial_variables(self, address: str, event: Optional[InboundEvent], variables: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        seeded: Dict[str, Any] = {"phone": address}
        if event is not None:
            seeded.update({
                "message": event.text,
                "name": event.contact_name or "",
                "contactId": event.contact_id,
            })
            if event.tag_id:
                seeded["tag_id"] = event.tag_id
            seeded.update(event.payload)
        seeded.update(variables or {})
        return seeded

    async def _start(
        self,
        flow: Flow,
        address: str,
        event: Optional[InboundEvent] = None,
        variables: Optional[Dict[str, Any]] = None,
        start_step_id: Optional[str] = None,
        depth: int = 0,
    ) -> PendingOutcome:
        device_id = event.device_id if event is not None else None
        session = await self.store.create(flow.id, address, self._initial_variables(address, event, variables), device_id)
        start_step_id = start_step_id or (flow.start_step.id if flow.start_step else None)

        result = self.interpreter(flow).run(session, start_step_id)
        if not await self._commit(session, result):
            raise SessionConflictError(f"session {session.session_id} changed before its first run was saved")

        pending = _pending("started", [session.session_id], result["actions"])
        await self._follow_directive(result, address, depth, pending)
        return pending

    async def _follow_directive(self, result: RunResult, address: str, depth: int, pending: PendingOutcome) -> None:
        """Start the flow a start_automation step asked for, appending its sessions and actions to `pending`."""
        directive = result["directive"]
        if isinstance(directive, ScheduleResume):
            log.info("Wait scheduled", session_id=result["session"].session_id, due_at=directive.due_at.isoformat())
            return
        if not isinstance(directive, StartFlow):
            return

        if depth >= MAX_CHAINED_FLOWS:
            log.error("Too many chained flow starts", address=address, flow_id=directive.flow_id)
            return
        target = await self.flows.get(directive.flow_id)
        if target is None or not target.is_active:
            log.warning("start_automation target unavailable", flow_id=directive.flow_id)
            return
        log.info("Starting chained flow", flow_id=target.id, address=address)
        flows_triggered_counter.labels(trigger_type="start_automation").inc()
        chained = await self._start(
            target, address, variables=dict(result["session"].variables), depth=depth + 1,
        )
        pending["session_ids"].extend(chained["session_ids"])
        pending["actions"].extend(chained["actions"])

    async def _commit(self, before: Session, result: RunResult) -> bool:
        """Persist a run with a compare-and-swap on the step the run started from."""
        after = result["session"]
        for step_type in result["executed_step_types"]:
            steps_executed_counter.labels(step_type=step_type).inc()

        swapped = await self.store.compare_and_swap(
            after.session_id,
            before.current_step_id,
            after.current_step_id,
            after.variables,
            after.status,
            assignee=after.assignee,
            ai_turn_count=after.ai_turn_count,
            resume_at=after.resume_at,
            resume_step_id=after.resume_step_id,
            diagnostic=after.diagnostic,
        )
        if not swapped:
            session_conflicts_counter.labels(operation="commit").inc()
            return False

        if after.status == SessionStatus.COMPLETED:
            sessions_completed_counter.labels(reason=after.diagnostic or "finished").inc()
            if after.diagnostic:
                log.warning("Session force-completed", session_id=after.session_id, flow_id=after.flow_id, diagnostic=after.diagnostic)
        return True

    # ---------------- Continuing sessions ---------------- #

    async def _continue(self, session: Session, event: InboundEvent) -> PendingOutcome:
        for _ in range(settings.cas_retries):
            flow = await self.flows.get(session.flow_id)
            if flow is None:
                log.warning("Session references a missing flow", session_id=session.session_id, flow_id=session.flow_id)
                await self.store.compare_and_swap(
                    session.session_id, session.current_step_id, None, session.variables,
                    SessionStatus.COMPLETED, diagnostic="missing_flow",
                )
                sessions_completed_counter.labels(reason="missing_flow").inc()
                return _pending("flow_missing", [session.session_id])

            if session.is_ai_assigned:
                return await self._continue_with_agent(session, event)

            if session.is_waiting:
                log.info("Reply received while waiting; ignored", session_id=session.session_id)
                return _pending("waiting", [session.session_id])

            resolution = resolve_reply(flow, session.current_step_id, event.reply)
            reply_resolution_counter.labels(outcome=resolution["matched_by"]).inc()

            if resolution["matched_by"] == NO_MATCH:
                corrective = SendMessageAction(
                    to=session.channel_address,
                    device_id=session.device_id,
                    session_id=session.session_id,
                    step_id=session.current_step_id,
                    text=strings.INVALID_OPTION,
                )
                return _pending("no_match", [session.session_id], [corrective])

            # a step without outgoing connections resolves to None, which completes the session
            result = self.interpreter(flow).continue_from_reply(
                session,
                session.current_step_id,
                event.text or event.reply,
                resolution["next_step_id"],
                option_id=resolution["option_id"],
            )
            if await self._commit(session, result):
                pending = _pending("continued", [session.session_id], result["actions"])
                await self._follow_directive(result, session.channel_address, 0, pending)
                return pending

            refreshed = await self.store.get(session.session_id)
            if refreshed is None or not refreshed.is_active:
                return _pending("stale", [session.session_id])
            session = refreshed

        raise SessionConflictError(f"session {session.session_id} changed {settings.cas_retries} times in a row")

    async def _continue_with_agent(self, session: Session, event: InboundEvent) -> PendingOutcome:
        agent = await self.flows.get_agent(session.assignee.id) if session.assignee.id else None
        outcome, updated = await self.delegate.handle_turn(session, agent, event.text or event.reply)

        if not outcome.failed:
            swapped = await self.store.compare_and_swap(
                updated.session_id,
                session.current_step_id,
                updated.current_step_id,
                updated.variables,
                updated.status,
                assignee=updated.assignee,
                ai_turn_count=updated.ai_turn_count,
            )
            if not swapped:
                session_conflicts_counter.labels(operation="ai_turn").inc()
                log.warning("AI turn could not be saved; session changed meanwhile", session_id=session.session_id)
            if outcome.ended:
                sessions_completed_counter.labels(reason="ai_handoff").inc()

        actions: List[Action] = []
        if outcome.reply:
            actions.append(SendMessageAction(
                to=session.channel_address,
                device_id=session.device_id,
                session_id=session.session_id,
                step_id=session.current_step_id,
                text=outcome.reply,
            ))

        status = "ai_failed" if outcome.failed else ("ai_handoff" if outcome.ended else "ai_reply")
        return _pending(status, [session.session_id], actions)

    # ---------------- Runtime API ---------------- #

    async def start_flow(self, flow_id: str, channel_address: str, variables: Optional[Dict[str, Any]] = None) -> RuntimeOutcome:
        """Start a flow explicitly, skipping trigger evaluation."""
        flow = await self.flows.get(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"flow {flow_id} not found")
        address = normalize_phone(channel_address)
        async with self.cache.address_lock(address):
            flows_triggered_counter.labels(trigger_type="api").inc()
            pending = await self._start(flow, address, variables=variables)
        return await self._deliver(pending)

    async def continue_session(self, channel_address: str, flow_id: str, text: str, reply_id: Optional[str] = None) -> RuntimeOutcome:
        """Feed a reply to the session of (address, flow)."""
        address = normalize_phone(channel_address)
        async with self.cache.address_lock(address):
            session = await self.store.find_for_flow(address, flow_id)
            if session is None or not session.is_active:
                raise SessionNotFoundError(f"no active session for {address} in flow {flow_id}")
            event = InboundEvent(channel_address=address, text=text, reply_id=reply_id)
            pending = await self._continue(session, event)
        return await self._deliver(pending)

    async def resume_wait(self, session_id: str, now: Optional[datetime] = None) -> RuntimeOutcome:
        """
        Resume a session parked at a wait step.

        Idempotent: a session that is gone, already advanced, or not yet due
        is left untouched.
        """
        now = now or datetime.now(timezone.utc)
        session = await self.store.get(session_id)
        if session is None:
            wait_resumes_counter.labels(status="not_found").inc()
            return _outcome("not_found")

        async with self.cache.address_lock(session.channel_address):
            pending = await self._resume_locked(session_id, now)
        return await self._deliver(pending)

    async def _resume_locked(self, session_id: str, now: datetime) -> PendingOutcome:
        session = await self.store.get(session_id)
        flow = await self.flows.get(session.flow_id) if session is not None else None
        step = flow.get_step(session.current_step_id) if flow is not None and session.is_waiting else None

        if session is None or step is None or step.type != StepType.WAIT.value:
            wait_resumes_counter.labels(status="stale").inc()
            log.info("Stale wait resume dropped", session_id=session_id)
            return _pending("stale", [session_id])
        if session.resume_at > now:
            wait_resumes_counter.labels(status="not_due").inc()
            return _pending("not_due", [session_id])

        result = self.interpreter(flow).run(session, session.resume_step_id, now)
        if not await self._commit(session, result):
            wait_resumes_counter.labels(status="stale").inc()
            return _pending("stale", [session_id])

        wait_resumes_counter.labels(status="resumed").inc()
        pending = _pending("resumed", [session_id], result["actions"])
        await self._follow_directive(result, session.channel_address, 0, pending)
        return pending

    async def reset(self, channel_address: str) -> RuntimeOutcome:
        address = normalize_phone(channel_address)
        async with self.cache.address_lock(address):
            removed = await self.store.reset(address)
            log.info("Sessions reset", address=address, removed=removed)
            return _outcome("reset")

    async def _reset_locked(self, address: str, device_id: Optional[str]) -> PendingOutcome:
        removed = await self.store.reset(address)
        sessions_completed_counter.labels(reason="reset").inc()
        log.info("Reset command received", address=address, removed=removed)
        confirmation = SendMessageAction(to=address, device_id=device_id, text=strings.RESET_CONFIRMATION)
        return _pending("reset", actions=[confirmation])


# Globally accessible instance
flow_runtime = FlowRuntime()
