# backend/tests/unit/test_agent_delegate.py

import pytest
from unittest.mock import AsyncMock

from app.config import strings
from app.config.persona import HANDOFF_MARKER, CLOSING_DIRECTIVE
from app.models.agent import AIAgent, CompletionResult
from app.models.session import Session, SessionStatus, Assignee
from app.services.agent_delegate import AgentDelegate, HISTORY_KEY, split_handoff, parse_handoff_payload
from app.services.ai_service import AIService, build_system_prompt
from app.workflows.errors import CompletionError


def _ai_session(turns=0, history=None):
    variables = {"name": "Ana"}
    if history is not None:
        variables[HISTORY_KEY] = history
    return Session(
        channel_address="+5215512345678",
        flow_id="flow-1",
        current_step_id="assign",
        variables=variables,
        assignee=Assignee(type="ai", id="bot"),
        ai_turn_count=turns,
    )


@pytest.fixture
def agent():
    return AIAgent(id="bot", name="Sofía", system_prompt="Vendes cursos.", max_turns=3)


@pytest.fixture
def ai():
    return AsyncMock()


@pytest.fixture
def notifications():
    mock = AsyncMock()
    mock.notify_handoff.return_value = True
    return mock


@pytest.fixture
def delegate(ai, notifications):
    return AgentDelegate(ai=ai, notifications=notifications, history_window=2)


class TestHandoffParsing:
    def test_split_without_marker(self):
        assert split_handoff("  Hola  ") == ("Hola", None)

    def test_split_with_fenced_json(self):
        visible, payload = split_handoff(f'Gracias!\n{HANDOFF_MARKER}\n```json\n{{"name": "Ana"}}\n```')
        assert visible == "Gracias!"
        assert payload == '{"name": "Ana"}'

    def test_parse_invalid_json(self):
        assert parse_handoff_payload("{name: Ana") is None

    def test_parse_non_object_is_wrapped(self):
        assert parse_handoff_payload("[1, 2]") == {"data": [1, 2]}


class TestHandleTurn:
    @pytest.mark.asyncio
    async def test_regular_turn_continues(self, delegate, ai, notifications, agent):
        ai.complete.return_value = CompletionResult(reply="¿Qué curso te interesa?", agent_name="Sofía")

        outcome, updated = await delegate.handle_turn(_ai_session(), agent, "Hola")

        assert outcome.reply == "¿Qué curso te interesa?"
        assert outcome.ended is False
        assert updated.ai_turn_count == 1
        assert updated.is_ai_assigned
        assert updated.variables[HISTORY_KEY][-2:] == [
            {"role": "user", "content": "Hola"},
            {"role": "assistant", "content": "¿Qué curso te interesa?"},
        ]
        assert ai.complete.call_args.args[4] is False  # not closing yet
        notifications.notify_handoff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, delegate, ai, agent):
        ai.complete.return_value = CompletionResult(reply="ok", agent_name="Sofía")
        history = [{"role": "user", "content": str(i)} for i in range(10)]

        _, updated = await delegate.handle_turn(_ai_session(history=history), agent, "otra")

        # window of 2 exchanges = 4 messages
        assert len(ai.complete.call_args.args[3]) == 4
        assert len(updated.variables[HISTORY_KEY]) == 4

    @pytest.mark.asyncio
    async def test_handoff_marker_ends_assignment(self, delegate, ai, notifications, agent):
        ai.complete.return_value = CompletionResult(
            reply=f'Perfecto, te contactará un asesor.\n{HANDOFF_MARKER}\n{{"name": "Ana", "interest": "Python"}}',
            agent_name="Sofía",
        )

        outcome, updated = await delegate.handle_turn(_ai_session(), agent, "Quiero Python")

        assert outcome.reply == "Perfecto, te contactará un asesor."
        assert outcome.ended is True
        assert outcome.handoff_payload == {"name": "Ana", "interest": "Python"}
        assert updated.status == SessionStatus.COMPLETED
        assert updated.assignee is None
        notifications.notify_handoff.assert_awaited_once()
        assert notifications.notify_handoff.call_args.kwargs["payload"] == {"name": "Ana", "interest": "Python"}

    @pytest.mark.asyncio
    async def test_malformed_payload_notifies_once_with_raw_text(self, delegate, ai, notifications, agent):
        ai.complete.return_value = CompletionResult(reply=f"Listo.\n{HANDOFF_MARKER}\n{{name: Ana", agent_name="Sofía")

        outcome, _ = await delegate.handle_turn(_ai_session(), agent, "eso es todo")

        assert outcome.ended is True
        assert outcome.handoff_payload is None
        assert outcome.handoff_raw == "{name: Ana"
        notifications.notify_handoff.assert_awaited_once()
        assert notifications.notify_handoff.call_args.kwargs["raw"] == "{name: Ana"

    @pytest.mark.asyncio
    async def test_last_turn_forces_closing(self, delegate, ai, notifications, agent):
        ai.complete.return_value = CompletionResult(reply="¡Gracias! Te escribimos pronto.", agent_name="Sofía")

        outcome, updated = await delegate.handle_turn(_ai_session(turns=2), agent, "ok")

        assert ai.complete.call_args.args[4] is True
        assert outcome.ended is True
        assert updated.status == SessionStatus.COMPLETED
        notifications.notify_handoff.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_completion_failure_keeps_session(self, delegate, ai, notifications, agent):
        ai.complete.side_effect = CompletionError("all providers down")
        session = _ai_session(turns=1)

        outcome, returned = await delegate.handle_turn(session, agent, "hola")

        assert outcome.failed is True
        assert outcome.reply == strings.AI_FALLBACK_REPLY
        assert returned.ai_turn_count == 1
        assert returned.is_ai_assigned
        notifications.notify_handoff.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_agent_gets_fallback(self, delegate, ai, agent):
        agent.is_active = False
        outcome, _ = await delegate.handle_turn(_ai_session(), agent, "hola")

        assert outcome.failed is True
        ai.complete.assert_not_awaited()


class TestAIService:
    def test_system_prompt_includes_profile_and_marker(self, agent):
        prompt = build_system_prompt(agent)
        assert "Vendes cursos." in prompt
        assert "Sofía" in prompt
        assert HANDOFF_MARKER in prompt
        assert CLOSING_DIRECTIVE not in prompt
        assert build_system_prompt(agent, closing=True).endswith(CLOSING_DIRECTIVE)

    @pytest.mark.asyncio
    async def test_falls_back_to_openai(self, mocker, agent):
        service = AIService()
        service.gemini_client = object()
        service.openai_client = object()
        mocker.patch.object(service, "_generate_gemini_response", new_callable=AsyncMock, side_effect=RuntimeError("quota"))
        mocker.patch.object(service, "_generate_openai_response", new_callable=AsyncMock, return_value="Hola desde OpenAI")

        result = await service.complete(agent, "s1", "hola", [])

        assert result.reply == "Hola desde OpenAI"
        assert result.agent_name == "Sofía"

    @pytest.mark.asyncio
    async def test_no_provider_raises(self, agent):
        service = AIService()
        service.gemini_client = None
        service.openai_client = None

        with pytest.raises(CompletionError):
            await service.complete(agent, "s1", "hola", [])
