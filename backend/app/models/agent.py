# /app/models/agent.py

from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, AliasChoices, ConfigDict


class AIAgent(BaseModel):
    """An AI agent that can own a conversation after an assign_conversation step."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Agent identifier")
    name: str = Field(..., description="Display name, also reported with every completion")
    system_prompt: str = Field(default="", validation_alias=AliasChoices("system_prompt", "systemPrompt"), description="Agent-specific instructions")
    max_turns: int = Field(default=20, ge=1, le=20, validation_alias=AliasChoices("max_turns", "maxTurns"), description="AI turns allowed before a closing reply is forced")
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))
    language: str = Field(default="es")
    tone: str = Field(default="amigable")
    goal: str = Field(default="")


class CompletionResult(BaseModel):
    reply: str
    agent_name: str


class DelegateOutcome(BaseModel):
    """Result of one AI-delegate turn."""
    reply: str = Field(..., description="User-visible text, marker and payload stripped")
    ended: bool = Field(default=False, description="AI assignment ended on this turn")
    handoff_payload: Optional[Dict[str, Any]] = Field(default=None)
    handoff_raw: Optional[str] = Field(default=None, description="Payload text that could not be parsed as JSON")
    failed: bool = Field(default=False, description="Completion failed and the fallback reply was used")
