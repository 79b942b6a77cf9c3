# backend/tests/unit/test_validator.py

import pytest

from app.models.flow import Flow
from app.services.flow_repository import load_flow, InMemoryFlowRepository
from app.workflows.errors import FlowValidationError
from app.workflows.validator import validate_flow, reachable_step_ids


def _codes(issues):
    return {issue["error_code"] for issue in issues}


class TestValidateFlow:
    def test_valid_flow(self, hi_flow):
        result = validate_flow(hi_flow)
        assert result["is_valid"] is True
        assert result["errors"] == []

    def test_missing_start(self):
        flow = Flow.model_validate({"id": "f", "steps": [{"id": "a", "type": "send_message", "config": {"text": "x"}}]})
        result = validate_flow(flow)
        assert result["is_valid"] is False
        assert _codes(result["errors"]) == {"NO_START_STEP"}

    def test_unreachable_step_is_only_a_warning(self, flow_factory):
        flow = flow_factory(
            steps=[
                {"id": "a", "type": "send_message", "config": {"text": "a"}},
                {"id": "island", "type": "send_message", "config": {"text": "nobody gets here"}},
            ],
            edges=[("start", "a")],
        )
        result = validate_flow(flow)
        assert result["is_valid"] is True
        assert "UNREACHABLE_STEP" in _codes(result["warnings"])
        assert "island" not in reachable_step_ids(flow)

    def test_step_errors(self, flow_factory):
        flow = flow_factory(
            steps=[
                {"id": "empty", "type": "send_message", "config": {"text": "  "}},
                {"id": "q", "type": "question_multiple", "config": {"message": "?", "options": [{"id": "x", "label": "X"}]}},
                {"id": "cond", "type": "condition", "config": {"conditions": []}},
                {"id": "ai", "type": "assign_conversation", "config": {"agentType": "ai"}},
                {"id": "rot", "type": "rotator", "config": {"options": [{"id": "only"}]}},
                {"id": "bad", "type": "teleport", "config": {}},
            ],
            edges=[("start", "empty"), ("empty", "q"), ("cond", "ai"), ("rot", "bad")],
        )
        codes = _codes(validate_flow(flow)["errors"])
        assert {
            "EMPTY_MESSAGE", "OPTION_NO_NEXT_STEP", "NO_CONDITIONS",
            "AI_AGENT_REQUIRED", "ROTATOR_TOO_FEW_OPTIONS", "INVALID_STEP_CONFIG",
        } <= codes

    def test_dangling_connection(self, flow_factory):
        flow = flow_factory(steps=[], edges=[("start", "ghost")])
        assert "DANGLING_CONNECTION" in _codes(validate_flow(flow)["errors"])

    def test_trigger_without_keywords(self, flow_factory):
        flow = flow_factory(
            steps=[{"id": "a", "type": "send_message", "config": {"text": "a"}}],
            edges=[("start", "a")],
            trigger={"type": "message_received", "matchMode": "contains", "keywords": []},
        )
        assert "TRIGGER_WITHOUT_KEYWORDS" in _codes(validate_flow(flow)["errors"])


class TestLoadFlow:
    def test_load_flow_rejects_invalid_graph(self):
        with pytest.raises(FlowValidationError):
            load_flow({"id": "broken", "steps": []})

    def test_seed_file_skips_invalid_flows(self, tmp_path):
        seed = tmp_path / "flows.json"
        seed.write_text("""{
            "flows": [
                {"id": "ok", "name": "OK", "steps": [{"id": "s", "type": "start", "config": {}}], "connections": []},
                {"id": "broken", "steps": []}
            ],
            "agents": [{"id": "bot", "name": "Sofía", "maxTurns": 5}]
        }""", encoding="utf-8")

        repo = InMemoryFlowRepository()
        repo.load_seed(str(seed))

        assert list(repo._flows) == ["ok"]
        assert "bot" in repo._agents
