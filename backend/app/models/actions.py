# /app/models/actions.py

from typing import Optional, List, Literal, Union, Annotated
from datetime import datetime
from pydantic import BaseModel, Field

# Actions are what the interpreter wants done; it never performs them.
# They are handed to a dispatcher once and are never persisted.


class _ActionBase(BaseModel):
    to: str = Field(..., description="Destination channel address")
    device_id: Optional[str] = Field(default=None, description="Device/channel to send from")
    session_id: Optional[str] = Field(default=None, description="Session that produced the action")
    step_id: Optional[str] = Field(default=None, description="Step that produced the action")
    delay_seconds: int = Field(default=0, description="Requested delay before sending; dispatcher metadata only")


class SendMessageAction(_ActionBase):
    type: Literal["send_message"] = "send_message"
    text: str


class InteractiveButton(BaseModel):
    id: str
    title: str


class SendInteractiveAction(_ActionBase):
    type: Literal["send_interactive"] = "send_interactive"
    body: str
    buttons: List[InteractiveButton] = Field(default_factory=list)
    fallback_text: str = Field(..., description="Numbered-list rendering used when buttons cannot be sent")


class SendMediaAction(_ActionBase):
    type: Literal["send_media"] = "send_media"
    media_type: Literal["image", "video", "audio", "document"]
    media_url: Optional[str] = None
    media_id: Optional[str] = None
    caption: Optional[str] = None
    file_name: Optional[str] = None


class SendTemplateAction(_ActionBase):
    type: Literal["send_template"] = "send_template"
    template_name: str
    language: Optional[str] = None
    body_params: List[str] = Field(default_factory=list)


class AssignConversationAction(_ActionBase):
    type: Literal["assign_conversation"] = "assign_conversation"
    assignee_type: Literal["human", "ai"]
    assignee_id: Optional[str] = None


class SendEmailAction(_ActionBase):
    type: Literal["send_email"] = "send_email"
    email: str
    subject: str
    body: str


Action = Annotated[
    Union[
        SendMessageAction, SendInteractiveAction, SendMediaAction, SendTemplateAction,
        AssignConversationAction, SendEmailAction,
    ],
    Field(discriminator="type"),
]


# ---------------- Directives ---------------- #
# Returned next to the actions when a run asks the caller to do something
# beyond dispatching: schedule a resume, or start another flow.

class ScheduleResume(BaseModel):
    kind: Literal["schedule_resume"] = "schedule_resume"
    due_at: datetime
    wait_step_id: str
    resume_step_id: Optional[str] = None


class StartFlow(BaseModel):
    kind: Literal["start_flow"] = "start_flow"
    flow_id: str


Directive = Union[ScheduleResume, StartFlow]
