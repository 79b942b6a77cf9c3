# /app/models/events.py

from typing import Optional, Dict, Any, Literal
from pydantic import BaseModel, Field


class InboundEvent(BaseModel):
    """A provider-neutral inbound event: a message, a tag change, or a third-party payload."""
    channel_address: str = Field(..., description="Normalized sender address")
    kind: Literal["message", "tag_added", "third_party"] = Field(default="message")
    text: str = Field(default="", description="Message text, or the button title for structured replies")
    reply_id: Optional[str] = Field(default=None, description="Structured reply id (button or list selection)")
    device_id: Optional[str] = Field(default=None, description="Receiving device / phone number id")
    contact_name: Optional[str] = Field(default=None)
    contact_id: Optional[str] = Field(default=None)
    message_id: Optional[str] = Field(default=None, description="Provider message id, used for de-duplication")
    tag_id: Optional[str] = Field(default=None)
    trigger_id: Optional[str] = Field(default=None)
    payload: Dict[str, Any] = Field(default_factory=dict, description="Extra data merged into new session variables")

    @property
    def reply(self) -> str:
        """What the reply resolver should see: the structured id when present."""
        return self.reply_id or self.text
