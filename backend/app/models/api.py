# /app/models/api.py

from pydantic import BaseModel, Field, AliasChoices, ConfigDict
from typing import List, Dict, Optional, Any
from datetime import datetime

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.

class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class StartFlowRequest(_Request):
    flow_id: str = Field(..., validation_alias=AliasChoices("flow_id", "flowId"))
    channel_address: str = Field(..., min_length=5, validation_alias=AliasChoices("channel_address", "phone", "address"))
    variables: Dict[str, Any] = Field(default_factory=dict)

class ContinueSessionRequest(_Request):
    flow_id: str = Field(..., validation_alias=AliasChoices("flow_id", "flowId"))
    channel_address: str = Field(..., min_length=5, validation_alias=AliasChoices("channel_address", "phone", "address"))
    text: str = Field(default="", max_length=4096)
    reply_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("reply_id", "replyId"))

class ResumeWaitRequest(_Request):
    session_id: str = Field(..., validation_alias=AliasChoices("session_id", "sessionId"))

class TagAddedRequest(_Request):
    channel_address: str = Field(..., min_length=5, validation_alias=AliasChoices("channel_address", "phone", "address"))
    tag_id: str = Field(..., validation_alias=AliasChoices("tag_id", "tagId"))
    device_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("device_id", "deviceId"))
    contact_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("contact_name", "name"))
    contact_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("contact_id", "contactId"))

class RuntimeResult(BaseModel):
    status: str
    session_ids: List[str] = Field(default_factory=list)
    actions: List[Dict[str, Any]] = Field(default_factory=list)

class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str
