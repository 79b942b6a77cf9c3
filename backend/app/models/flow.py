# /app/models/flow.py

from enum import Enum
from typing import Optional, List, Dict, Any, Literal, Union, Annotated
from pydantic import BaseModel, Field, ConfigDict, AliasChoices, ValidationError, field_validator, model_validator

# Flow graph model. Step configuration is a tagged union keyed by the step's
# type and is parsed once when the flow is loaded; a step whose configuration
# fails to parse is kept with `config_error` set so the interpreter can
# terminate the session instead of crashing mid-run.


class StepType(str, Enum):
    START = "start"
    SEND_MESSAGE = "send_message"
    QUESTION_SIMPLE = "question_simple"
    QUESTION_MULTIPLE = "question_multiple"
    MULTIPLE_CHOICE = "multipleChoice"
    WAIT = "wait"
    CONDITION = "condition"
    ASSIGN_CONVERSATION = "assign_conversation"
    START_AUTOMATION = "start_automation"
    ROTATOR = "rotator"
    TEMPLATE = "template"


CHOICE_STEP_TYPES = {StepType.QUESTION_MULTIPLE.value, StepType.MULTIPLE_CHOICE.value}
INTERACTIVE_STEP_TYPES = CHOICE_STEP_TYPES | {StepType.QUESTION_SIMPLE.value}


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------- Triggers ---------------- #

class _TriggerBase(_ConfigModel):
    device_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("device_id", "deviceId"))
    once_per_contact: bool = Field(default=False, validation_alias=AliasChoices("once_per_contact", "oncePerContact"))

    @field_validator("device_id", mode="before")
    @classmethod
    def blank_device_is_none(cls, v):
        return v or None


class NoTrigger(_ConfigModel):
    type: Literal["none"] = "none"


class MessageReceivedTrigger(_TriggerBase):
    type: Literal["message_received"] = "message_received"
    match_mode: Literal["contains", "exact", "all"] = Field(
        default="contains", validation_alias=AliasChoices("match_mode", "matchMode")
    )
    keywords: List[str] = Field(default_factory=list)

    @field_validator("keywords", mode="before")
    @classmethod
    def parse_keywords(cls, v):
        """Accept a comma-separated string as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return [k.strip() for k in v.split(",") if k.strip()]
        return [k for k in v if isinstance(k, str) and k.strip()]


class TagAddedTrigger(_TriggerBase):
    type: Literal["tag_added"] = "tag_added"
    tag_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("tag_id", "tagId"))


class ThirdPartyTrigger(_TriggerBase):
    type: Literal["third_party"] = "third_party"
    field_names: List[str] = Field(default_factory=list, validation_alias=AliasChoices("field_names", "fields"))


Trigger = Annotated[
    Union[NoTrigger, MessageReceivedTrigger, TagAddedTrigger, ThirdPartyTrigger],
    Field(discriminator="type"),
]


# ---------------- Step configurations ---------------- #

class StartConfig(_ConfigModel):
    trigger: Optional[Trigger] = None


class SendMessageConfig(_ConfigModel):
    type: Literal["text", "media", "image", "video", "audio", "document"] = "text"
    text: str = Field(default="", validation_alias=AliasChoices("text", "message", "body"))
    caption: Optional[str] = None
    media_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("media_url", "mediaUrl", "fileUrl"))
    media_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("media_id", "mediaId"))
    media_type: Optional[Literal["image", "video", "audio", "document"]] = Field(
        default=None, validation_alias=AliasChoices("media_type", "mediaType", "mediaFormat")
    )
    file_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("file_name", "fileName"))
    delay_seconds: int = Field(default=0, ge=0, validation_alias=AliasChoices("delay_seconds", "delaySeconds", "delay"))

    @property
    def media_kind(self) -> Optional[str]:
        """The concrete media type to send, or None for a plain text message."""
        if self.type == "text":
            return None
        if self.type == "media":
            return self.media_type or "image"
        return self.type

    @property
    def has_usable_media(self) -> bool:
        # blob: URLs only exist inside the editor's browser tab
        if self.media_id:
            return True
        return bool(self.media_url) and not self.media_url.startswith("blob:")


class QuestionSimpleConfig(_ConfigModel):
    question_text: str = Field(default="", validation_alias=AliasChoices("question_text", "questionText", "question", "text"))
    store_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("store_key", "storeKey", "saveAs"))


class ChoiceOption(_ConfigModel):
    id: str
    label: str = Field(default="", validation_alias=AliasChoices("label", "title", "text"))


class ChoiceConfig(_ConfigModel):
    message: str = Field(default="", validation_alias=AliasChoices("message", "questionText", "question", "text"))
    options: List[ChoiceOption] = Field(default_factory=list)
    store_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("store_key", "storeKey", "saveAs"))


class WaitConfig(_ConfigModel):
    value: float = Field(default=5, gt=0, validation_alias=AliasChoices("value", "waitValue", "duration"))
    unit: Literal["seconds", "minutes", "hours", "days"] = Field(default="minutes", validation_alias=AliasChoices("unit", "waitUnit"))

    @property
    def seconds(self) -> float:
        multiplier = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}[self.unit]
        return self.value * multiplier


class ConditionRule(_ConfigModel):
    type: Literal["tag", "weekday", "time"]
    operator: Literal["is", "is_not"] = "is"
    value: str


class ConditionConfig(_ConfigModel):
    conditions: List[ConditionRule] = Field(default_factory=list)
    match: Literal["all", "any"] = "all"


class AssignConfig(_ConfigModel):
    agent_type: Literal["human", "ai"] = Field(default="human", validation_alias=AliasChoices("agent_type", "agentType"))
    agent_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("agent_id", "agentId"))
    assign_to_self: bool = Field(default=False, validation_alias=AliasChoices("assign_to_self", "assignToSelf"))
    send_email: bool = Field(default=False, validation_alias=AliasChoices("send_email", "sendEmail"))
    admin_email: Optional[str] = Field(default=None, validation_alias=AliasChoices("admin_email", "adminEmail"))


class RotatorOption(_ConfigModel):
    id: str
    label: str = ""
    weight: float = 0


class RotatorConfig(_ConfigModel):
    mode: Literal["random", "sequential"] = "random"
    options: List[RotatorOption] = Field(default_factory=list)


class StartAutomationConfig(_ConfigModel):
    flow_id: str = Field(validation_alias=AliasChoices("flow_id", "flowId", "automationId"))


class TemplateConfig(_ConfigModel):
    template_name: str = Field(validation_alias=AliasChoices("template_name", "templateName"))
    language: Optional[str] = None
    variables: List[str] = Field(default_factory=list)


StepConfig = Union[
    StartConfig, SendMessageConfig, QuestionSimpleConfig, ChoiceConfig, WaitConfig, ConditionConfig,
    AssignConfig, RotatorConfig, StartAutomationConfig, TemplateConfig,
]

STEP_CONFIG_MODELS: Dict[str, type] = {
    StepType.START.value: StartConfig,
    StepType.SEND_MESSAGE.value: SendMessageConfig,
    StepType.QUESTION_SIMPLE.value: QuestionSimpleConfig,
    StepType.QUESTION_MULTIPLE.value: ChoiceConfig,
    StepType.MULTIPLE_CHOICE.value: ChoiceConfig,
    StepType.WAIT.value: WaitConfig,
    StepType.CONDITION.value: ConditionConfig,
    StepType.ASSIGN_CONVERSATION.value: AssignConfig,
    StepType.START_AUTOMATION.value: StartAutomationConfig,
    StepType.ROTATOR.value: RotatorConfig,
    StepType.TEMPLATE.value: TemplateConfig,
}


# ---------------- Graph ---------------- #

class Step(BaseModel):
    """A typed node of a flow. `parsed` holds the validated configuration."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Step identifier, unique within the flow")
    type: str = Field(..., description="Step type")
    config: Dict[str, Any] = Field(default_factory=dict, description="Raw configuration as stored by the editor")
    parsed: Optional[StepConfig] = Field(default=None, exclude=True, description="Configuration parsed for the step type")
    config_error: Optional[str] = Field(default=None, exclude=True, description="Why the configuration was rejected")

    @model_validator(mode="after")
    def parse_config(self):
        model = STEP_CONFIG_MODELS.get(self.type)
        if model is None:
            self.parsed = None
            self.config_error = f"unknown step type '{self.type}'"
            return self
        try:
            self.parsed = model.model_validate(self.config)
            self.config_error = None
        except ValidationError as e:
            self.parsed = None
            self.config_error = f"invalid {self.type} config: {e.error_count()} error(s): {e.errors()[0]['msg']}"
        return self

    @property
    def is_valid(self) -> bool:
        return self.parsed is not None


class Connection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Connection identifier")
    source: str = Field(..., validation_alias=AliasChoices("source", "fromStepId", "from_step_id"))
    target: str = Field(..., validation_alias=AliasChoices("target", "toStepId", "to_step_id"))
    source_handle: Optional[str] = Field(default=None, validation_alias=AliasChoices("source_handle", "sourceHandle"))
    condition_label: Optional[str] = Field(default=None, validation_alias=AliasChoices("condition_label", "conditionLabel"))


class Flow(BaseModel):
    """A named automation: steps plus directed connections between them."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Flow identifier")
    name: str = Field(default="", description="Human-readable flow name")
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))
    steps: List[Step] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def start_step(self) -> Optional[Step]:
        for step in self.steps:
            if step.type == StepType.START.value:
                return step
        return None

    @property
    def trigger(self):
        """The start step's trigger, or None when the flow cannot be triggered."""
        start = self.start_step
        if start is None or not isinstance(start.parsed, StartConfig):
            return None
        trigger = start.parsed.trigger
        if trigger is None or trigger.type == "none":
            return None
        return trigger

    def outgoing(self, step_id: str) -> List[Connection]:
        """Outgoing connections of a step, in declaration order."""
        return [c for c in self.connections if c.source == step_id]

    def connection_for_handle(self, step_id: str, handle: str) -> Optional[Connection]:
        for connection in self.outgoing(step_id):
            if connection.source_handle == handle:
                return connection
        return None
