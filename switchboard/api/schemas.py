from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum nested JSON depth accepted in free-form request objects
MAX_JSON_DEPTH = 20


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable ``ServiceError.error_code``."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ToolExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    parameters: Dict[str, Any] = Field(default_factory=dict)
    channel_type: str = Field(default="webchat", alias="channelType", max_length=32)
    user_id: str = Field(default="tool-test", alias="userId", min_length=1, max_length=255)

    @field_validator("parameters")
    @classmethod
    def _check_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class ToolValidateRequest(BaseModel):
    implementation: str = Field(..., max_length=262144)


class IntegrationRouting(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    flow_id: Optional[str] = Field(default=None, alias="flowId")
    channel_config_id: Optional[str] = Field(default=None, alias="channelConfigId")


class IntegrationEnvelope(BaseModel):
    """Namespaced case data an external system attaches to a conversation."""

    model_config = ConfigDict(populate_by_name=True)

    namespace: str = Field(..., min_length=1, max_length=64)
    case_id: str = Field(..., alias="caseId", min_length=1, max_length=255)
    refs: Dict[str, Any] = Field(default_factory=dict)
    seed: Dict[str, Any] = Field(default_factory=dict)
    routing: IntegrationRouting = Field(default_factory=IntegrationRouting)

    @field_validator("refs", "seed")
    @classmethod
    def _check_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value

    def to_payload(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "caseId": self.case_id,
            "refs": self.refs,
            "seed": self.seed,
            "routing": self.routing.model_dump(by_alias=True, exclude_none=True),
        }


class IntegrationContextRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    channel_type: str = Field(..., alias="channelType")
    user_id: str = Field(..., alias="userId", min_length=1, max_length=255)
    envelope: IntegrationEnvelope
    conversation_metadata: Dict[str, Any] = Field(default_factory=dict, alias="conversationMetadata")


class IntegrationOutboundRequest(IntegrationContextRequest):
    message: str = Field(..., min_length=1, max_length=4096)
