# /app/services/flow_repository.py

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Any

from pydantic import ValidationError

from app.config.settings import settings
from app.models.agent import AIAgent
from app.models.flow import Flow
from app.workflows.errors import FlowValidationError
from app.workflows.validator import validate_flow

# Read access to flow graphs and AI agents. Flows are parsed and validated
# when they are loaded, so the runtime only ever sees well-formed graphs.

logger = logging.getLogger(__name__)


def load_flow(data: Dict[str, Any]) -> Flow:
    """
    Parse and validate a raw flow document.

    Raises:
        FlowValidationError: when the graph has validation errors
    """
    flow = Flow.model_validate(data)
    result = validate_flow(flow)
    for warning in result["warnings"]:
        logger.warning(f"Flow {flow.id} warning [{warning['error_code']}]: {warning['message']}")
    if not result["is_valid"]:
        raise FlowValidationError(flow.id, result["errors"])
    return flow


class FlowRepository(Protocol):
    async def list_active(self) -> List[Flow]: ...

    async def get(self, flow_id: str) -> Optional[Flow]: ...

    async def get_agent(self, agent_id: str) -> Optional[AIAgent]: ...


class InMemoryFlowRepository:
    def __init__(self, flows: Optional[List[Flow]] = None, agents: Optional[List[AIAgent]] = None):
        self._flows: Dict[str, Flow] = {f.id: f for f in flows or []}
        self._agents: Dict[str, AIAgent] = {a.id: a for a in agents or []}

    def add_flow(self, flow: Flow) -> None:
        self._flows[flow.id] = flow

    def add_agent(self, agent: AIAgent) -> None:
        self._agents[agent.id] = agent

    async def list_active(self) -> List[Flow]:
        return [f for f in self._flows.values() if f.is_active]

    async def get(self, flow_id: str) -> Optional[Flow]:
        return self._flows.get(flow_id)

    async def get_agent(self, agent_id: str) -> Optional[AIAgent]:
        return self._agents.get(agent_id)

    def load_seed(self, path: str) -> None:
        """Load flows and agents from a JSON file shaped {"flows": [...], "agents": [...]}."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        for raw in data.get("flows", []):
            try:
                self.add_flow(load_flow(raw))
            except (FlowValidationError, ValidationError) as e:
                logger.error(f"Skipping invalid flow from {path}: {e}")
        for raw in data.get("agents", []):
            try:
                self.add_agent(AIAgent.model_validate(raw))
            except ValidationError as e:
                logger.error(f"Skipping invalid AI agent from {path}: {e}")
        logger.info(f"Loaded {len(self._flows)} flow(s) and {len(self._agents)} agent(s) from {path}")


class MongoFlowRepository:
    def __init__(self, db_service):
        self.db_service = db_service

    def _parse(self, doc: Optional[Dict[str, Any]]) -> Optional[Flow]:
        if not doc:
            return None
        doc = dict(doc)
        doc.setdefault("id", str(doc.pop("_id", "")))
        try:
            return load_flow(doc)
        except (FlowValidationError, ValidationError) as e:
            logger.error(f"Ignoring invalid flow {doc.get('id')}: {e}")
            return None

    async def list_active(self) -> List[Flow]:
        from app.services.db_service import FLOWS_COLLECTION

        async def _query():
            return await self.db_service.db[FLOWS_COLLECTION].find({"is_active": True}).to_list(length=None)

        docs = await self.db_service._safe_db_operation(_query, default_return=[], name="list_flows")
        return [flow for flow in (self._parse(doc) for doc in docs) if flow is not None]

    async def get(self, flow_id: str) -> Optional[Flow]:
        from app.services.db_service import FLOWS_COLLECTION
        doc = await self.db_service._safe_db_operation(
            lambda: self.db_service.db[FLOWS_COLLECTION].find_one({"_id": flow_id}),
            name="get_flow",
        )
        return self._parse(doc)

    async def get_agent(self, agent_id: str) -> Optional[AIAgent]:
        from app.services.db_service import AGENTS_COLLECTION
        doc = await self.db_service._safe_db_operation(
            lambda: self.db_service.db[AGENTS_COLLECTION].find_one({"_id": agent_id}),
            name="get_agent",
        )
        if not doc:
            return None
        doc = dict(doc)
        doc.setdefault("id", str(doc.pop("_id", "")))
        return AIAgent.model_validate(doc)


def build_flow_repository() -> FlowRepository:
    if settings.session_backend == "mongo":
        from app.services.db_service import db_service
        return MongoFlowRepository(db_service)
    repository = InMemoryFlowRepository()
    if settings.flows_seed_path:
        repository.load_seed(settings.flows_seed_path)
    return repository


# Globally accessible instance
flow_repository = build_flow_repository()
