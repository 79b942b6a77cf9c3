# /app/services/session_store.py

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple, Any

from app.config.settings import settings
from app.models.session import Session, SessionStatus
from app.utils.metrics import database_operations_counter

# Session persistence. Sessions are keyed by the composite (channel address,
# flow id): starting a flow again for the same pair replaces the record, and
# any record at all counts as a prior execution for once-per-contact
# triggers. Every update is a compare-and-swap on the stored current step id.

logger = logging.getLogger(__name__)

# Fields a compare-and-swap may change besides step, variables and status.
MUTABLE_FIELDS = {"assignee", "ai_turn_count", "resume_at", "resume_step_id", "diagnostic", "device_id"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore(Protocol):
    async def find(self, channel_address: str) -> Optional[Session]: ...

    async def find_for_flow(self, channel_address: str, flow_id: str) -> Optional[Session]: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def has_session(self, channel_address: str, flow_id: str) -> bool: ...

    async def create(
        self, flow_id: str, channel_address: str, variables: Dict[str, Any], device_id: Optional[str] = None
    ) -> Session: ...

    async def compare_and_swap(
        self,
        session_id: str,
        expected_step_id: Optional[str],
        new_step_id: Optional[str],
        variables: Dict[str, Any],
        status: SessionStatus,
        **extra: Any,
    ) -> bool: ...

    async def complete_active(self, channel_address: str) -> int: ...

    async def reset(self, channel_address: str) -> int: ...

    async def due_waits(self, now: datetime, limit: int = 100) -> List[Session]: ...


def _check_extra(extra: Dict[str, Any]) -> None:
    unknown = set(extra) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported session fields for compare_and_swap: {sorted(unknown)}")


class InMemorySessionStore:
    """Process-local store used in development and tests."""

    def __init__(self):
        self._sessions: Dict[Tuple[str, str], Session] = {}
        self._lock = asyncio.Lock()

    def _by_id(self, session_id: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.session_id == session_id:
                return session
        return None

    async def find(self, channel_address: str) -> Optional[Session]:
        """The most recently updated active session of an address."""
        active = [
            s for (address, _), s in self._sessions.items()
            if address == channel_address and s.is_active
        ]
        if not active:
            return None
        return max(active, key=lambda s: s.updated_at).model_copy(deep=True)

    async def find_for_flow(self, channel_address: str, flow_id: str) -> Optional[Session]:
        session = self._sessions.get((channel_address, flow_id))
        return session.model_copy(deep=True) if session else None

    async def get(self, session_id: str) -> Optional[Session]:
        session = self._by_id(session_id)
        return session.model_copy(deep=True) if session else None

    async def has_session(self, channel_address: str, flow_id: str) -> bool:
        return (channel_address, flow_id) in self._sessions

    async def create(self, flow_id, channel_address, variables, device_id=None) -> Session:
        session = Session(
            channel_address=channel_address,
            flow_id=flow_id,
            variables=dict(variables),
            device_id=device_id,
        )
        async with self._lock:
            self._sessions[(channel_address, flow_id)] = session
        return session.model_copy(deep=True)

    async def compare_and_swap(self, session_id, expected_step_id, new_step_id, variables, status, **extra) -> bool:
        _check_extra(extra)
        async with self._lock:
            stored = self._by_id(session_id)
            if stored is None or stored.current_step_id != expected_step_id:
                return False
            updated = stored.model_copy(update={
                "current_step_id": new_step_id,
                "variables": dict(variables),
                "status": SessionStatus(status),
                "updated_at": _now_utc(),
                **extra,
            }, deep=True)
            self._sessions[(stored.channel_address, stored.flow_id)] = updated
            return True

    async def complete_active(self, channel_address: str) -> int:
        count = 0
        async with self._lock:
            for key, session in list(self._sessions.items()):
                if key[0] == channel_address and session.status == SessionStatus.ACTIVE:
                    self._sessions[key] = session.model_copy(update={
                        "status": SessionStatus.COMPLETED,
                        "current_step_id": None,
                        "assignee": None,
                        "resume_at": None,
                        "resume_step_id": None,
                        "updated_at": _now_utc(),
                    })
                    count += 1
        return count

    async def reset(self, channel_address: str) -> int:
        async with self._lock:
            keys = [k for k in self._sessions if k[0] == channel_address]
            for key in keys:
                del self._sessions[key]
        return len(keys)

    async def due_waits(self, now: datetime, limit: int = 100) -> List[Session]:
        due = [
            s for s in self._sessions.values()
            if s.status == SessionStatus.ACTIVE and s.resume_at is not None and s.resume_at <= now
        ]
        due.sort(key=lambda s: s.resume_at)
        return [s.model_copy(deep=True) for s in due[:limit]]


class MongoSessionStore:
    """MongoDB-backed store; the compare-and-swap is a single conditional update."""

    def __init__(self, db_service):
        self.db_service = db_service

    @property
    def collection(self):
        from app.services.db_service import SESSIONS_COLLECTION
        return self.db_service.db[SESSIONS_COLLECTION]

    @staticmethod
    def _to_document(session: Session) -> Dict[str, Any]:
        doc = session.model_dump(mode="python")
        doc["status"] = session.status.value
        doc["_id"] = session.session_id
        return doc

    @staticmethod
    def _from_document(doc: Optional[Dict[str, Any]]) -> Optional[Session]:
        if not doc:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        return Session.model_validate(doc)

    async def find(self, channel_address: str) -> Optional[Session]:
        doc = await self.db_service._safe_db_operation(
            lambda: self.collection.find_one(
                {"channel_address": channel_address, "status": SessionStatus.ACTIVE.value, "current_step_id": {"$ne": None}},
                sort=[("updated_at", -1)],
            ),
            name="find_session",
        )
        return self._from_document(doc)

    async def find_for_flow(self, channel_address: str, flow_id: str) -> Optional[Session]:
        doc = await self.db_service._safe_db_operation(
            lambda: self.collection.find_one({"channel_address": channel_address, "flow_id": flow_id}),
            name="find_session_for_flow",
        )
        return self._from_document(doc)

    async def get(self, session_id: str) -> Optional[Session]:
        doc = await self.db_service._safe_db_operation(
            lambda: self.collection.find_one({"_id": session_id}), name="get_session"
        )
        return self._from_document(doc)

    async def has_session(self, channel_address: str, flow_id: str) -> bool:
        count = await self.db_service._safe_db_operation(
            lambda: self.collection.count_documents({"channel_address": channel_address, "flow_id": flow_id}, limit=1),
            default_return=0,
            name="has_session",
        )
        return bool(count)

    async def create(self, flow_id, channel_address, variables, device_id=None) -> Session:
        session = Session(
            channel_address=channel_address,
            flow_id=flow_id,
            variables=dict(variables),
            device_id=device_id,
        )
        # the composite key owns the record; a restart replaces the old session
        await self.collection.delete_one({"channel_address": channel_address, "flow_id": flow_id})
        await self.collection.insert_one(self._to_document(session))
        database_operations_counter.labels(operation="create_session", status="success").inc()
        return session

    async def compare_and_swap(self, session_id, expected_step_id, new_step_id, variables, status, **extra) -> bool:
        _check_extra(extra)
        update = {
            "current_step_id": new_step_id,
            "variables": dict(variables),
            "status": SessionStatus(status).value,
            "updated_at": _now_utc(),
        }
        for key, value in extra.items():
            update[key] = value.model_dump() if hasattr(value, "model_dump") else value

        result = await self.db_service._safe_db_operation(
            lambda: self.collection.update_one(
                {"_id": session_id, "current_step_id": expected_step_id},
                {"$set": update},
            ),
            name="session_cas",
        )
        swapped = bool(result is not None and result.matched_count == 1)
        if not swapped:
            database_operations_counter.labels(operation="session_cas", status="rejected").inc()
        return swapped

    async def complete_active(self, channel_address: str) -> int:
        result = await self.db_service._safe_db_operation(
            lambda: self.collection.update_many(
                {"channel_address": channel_address, "status": SessionStatus.ACTIVE.value},
                {"$set": {
                    "status": SessionStatus.COMPLETED.value,
                    "current_step_id": None,
                    "assignee": None,
                    "resume_at": None,
                    "resume_step_id": None,
                    "updated_at": _now_utc(),
                }},
            ),
            name="complete_active",
        )
        return result.modified_count if result is not None else 0

    async def reset(self, channel_address: str) -> int:
        result = await self.db_service._safe_db_operation(
            lambda: self.collection.delete_many({"channel_address": channel_address}),
            name="reset_sessions",
        )
        return result.deleted_count if result is not None else 0

    async def due_waits(self, now: datetime, limit: int = 100) -> List[Session]:
        async def _query():
            cursor = self.collection.find(
                {"status": SessionStatus.ACTIVE.value, "resume_at": {"$ne": None, "$lte": now}}
            ).sort("resume_at", 1).limit(limit)
            return await cursor.to_list(length=limit)

        docs = await self.db_service._safe_db_operation(_query, default_return=[], name="due_waits")
        return [self._from_document(doc) for doc in docs]


def build_session_store() -> SessionStore:
    if settings.session_backend == "mongo":
        from app.services.db_service import db_service
        logger.info("Using MongoDB session store.")
        return MongoSessionStore(db_service)
    logger.info("Using in-memory session store.")
    return InMemorySessionStore()


# Globally accessible instance
session_store = build_session_store()
