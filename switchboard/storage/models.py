from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    EMAIL = "email"
    WEBCHAT = "webchat"


class ToolKind(str, Enum):
    """How a loaded tool definition is executed."""

    CODE = "code"
    EMAIL = "email"
    SQL = "sql"
    REST = "rest"
    BUILTIN = "builtin"


# Live session state --------------------------------------------------------


@dataclass
class ContextMessage:
    role: str
    content: str
    timestamp: Optional[str] = None


@dataclass
class ToolExecution:
    """Outcome of one tool call, appended to a session's execution log."""

    id: str
    tool_name: str
    parameters: Dict[str, Any]
    status: str = "running"
    result: Any = None
    error: Optional[str] = None
    execution_time_ms: int = 0
    executed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["executed_at"] = _iso(self.executed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolExecution":
        return cls(
            id=data["id"],
            tool_name=data["tool_name"],
            parameters=data.get("parameters") or {},
            status=data.get("status", "running"),
            result=data.get("result"),
            error=data.get("error"),
            execution_time_ms=int(data.get("execution_time_ms") or 0),
            executed_at=parse_datetime(data.get("executed_at")) or utcnow(),
        )


@dataclass
class SessionContext:
    session_id: str
    conversation_id: str
    channel_type: str
    user_id: str
    conversation_history: List[ContextMessage] = field(default_factory=list)
    tool_executions: List[ToolExecution] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "channel_type": self.channel_type,
            "user_id": self.user_id,
            "conversation_history": [asdict(msg) for msg in self.conversation_history],
            "tool_executions": [execution.to_dict() for execution in self.tool_executions],
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionContext":
        return cls(
            session_id=data["session_id"],
            conversation_id=data.get("conversation_id") or data["session_id"],
            channel_type=data.get("channel_type", ""),
            user_id=data.get("user_id", ""),
            conversation_history=[
                ContextMessage(**msg) for msg in data.get("conversation_history") or []
            ],
            tool_executions=[
                ToolExecution.from_dict(item) for item in data.get("tool_executions") or []
            ],
            metadata=data.get("metadata") or {},
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
            expires_at=parse_datetime(data.get("expires_at")),
        )


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


# Canonical messages ----------------------------------------------------------


@dataclass
class IncomingMessage:
    """Provider independent shape every webhook payload is normalized into."""

    channel_type: str
    channel_user_id: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str = ""
    role: str = "user"
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def provider_message_id(self) -> Optional[str]:
        value = self.metadata.get("messageId") or self.metadata.get("id")
        return str(value) if value else None


@dataclass
class OutgoingMessage:
    channel_user_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessingResult:
    """What the message-processing collaborator hands back to the pipeline."""

    conversation_id: str
    outgoing_message: OutgoingMessage
    tool_executions: List[ToolExecution] = field(default_factory=list)
    tokens_used: int = 0
    cost: float = 0.0
    processing_time_ms: int = 0
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# Persisted records -----------------------------------------------------------


@dataclass
class Conversation:
    id: str
    channel: str
    channel_user_id: str
    flow_id: Optional[str] = None
    status: str = "active"
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    tokens_used: int = 0
    cost: float = 0.0
    idempotency_key: Optional[str] = None
    source_namespace: Optional[str] = None
    case_id: Optional[str] = None


@dataclass
class ToolExecutionRecord:
    id: str
    conversation_id: str
    message_id: Optional[str]
    tool_name: str
    parameters: Dict[str, Any]
    result: Any
    status: str
    execution_time_ms: int
    error_message: Optional[str] = None
    executed_at: datetime = field(default_factory=utcnow)


@dataclass
class ChannelConfig:
    id: str
    name: str
    channel_type: str
    config: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True


@dataclass
class Flow:
    id: str
    name: str
    llm_id: Optional[str] = None
    flow_config: Dict[str, Any] = field(default_factory=dict)
    enabled_tools: List[str] = field(default_factory=list)
    routing_conditions: Dict[str, Any] = field(default_factory=dict)
    priority: int = 100
    active: bool = True


@dataclass
class FlowChannel:
    flow_id: str
    channel_id: str
    priority: int = 100
    active: bool = True


@dataclass
class LLMConfig:
    id: str
    provider: str
    model: str
    config: Dict[str, Any] = field(default_factory=dict)
    active: bool = True


@dataclass
class RoutingResult:
    """Resolved flow plus the channel it was resolved through."""

    flow: Flow
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    llm_config: Dict[str, Any] = field(default_factory=dict)
    enabled_tools: List[str] = field(default_factory=list)
    channel_config: Optional[Dict[str, Any]] = None
    channel_config_id: Optional[str] = None

    @property
    def system_prompt(self) -> str:
        return str(self.flow.flow_config.get("systemPrompt") or "")

    @system_prompt.setter
    def system_prompt(self, value: str) -> None:
        self.flow.flow_config = {**self.flow.flow_config, "systemPrompt": value}


@dataclass
class ToolDefinitionRecord:
    id: str
    name: str
    description: str = ""
    parameters: Optional[Dict[str, Any]] = None
    permissions: Optional[Dict[str, Any]] = None
    implementation: Optional[str] = None
    tool_type: str = ToolKind.CODE.value
    config: Dict[str, Any] = field(default_factory=dict)
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class KnowledgeChunk:
    id: str
    flow_id: str
    content: str
    source: Optional[str] = None
    score: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
