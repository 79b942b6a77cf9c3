# /app/models/session.py

import uuid
from enum import Enum
from typing import Optional, Dict, Any, Literal
from datetime import datetime, timezone
from pydantic import BaseModel, Field


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class Assignee(BaseModel):
    """Who currently owns the conversation: a human agent or an AI agent."""
    type: Literal["human", "ai"] = Field(..., description="Assignee kind")
    id: Optional[str] = Field(default=None, description="Agent identifier")


class Session(BaseModel):
    """
    Execution cursor for one (channel address, flow) pair.

    Sessions are only mutated through the session store's compare-and-swap,
    keyed on `current_step_id`, so concurrent events for the same address
    cannot double-advance a session.
    """
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Opaque session identifier")
    channel_address: str = Field(..., description="Normalized phone number of the contact")
    flow_id: str = Field(..., description="Flow this session executes")
    current_step_id: Optional[str] = Field(default=None, description="Step the session is parked at")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Variable bag used for placeholders and conditions")
    status: SessionStatus = Field(default=SessionStatus.ACTIVE, description="Lifecycle status")
    assignee: Optional[Assignee] = Field(default=None, description="Current conversation owner")
    ai_turn_count: int = Field(default=0, description="AI turns consumed under the current AI assignment")
    resume_at: Optional[datetime] = Field(default=None, description="When a parked wait step becomes due")
    resume_step_id: Optional[str] = Field(default=None, description="Step to continue from once the wait is due")
    diagnostic: Optional[str] = Field(default=None, description="Why the session was force-completed")
    device_id: Optional[str] = Field(default=None, description="Channel device the session runs on")
    created_at: datetime = Field(default_factory=_now_utc)
    updated_at: datetime = Field(default_factory=_now_utc)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE and self.current_step_id is not None

    @property
    def is_ai_assigned(self) -> bool:
        return self.is_active and self.assignee is not None and self.assignee.type == "ai"

    @property
    def is_waiting(self) -> bool:
        return self.is_active and self.resume_at is not None
