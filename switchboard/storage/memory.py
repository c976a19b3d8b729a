from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from switchboard.logging import get_logger
from switchboard.storage.errors import ConstraintViolation
from switchboard.storage.models import (
    ChannelConfig,
    Conversation,
    Flow,
    FlowChannel,
    KnowledgeChunk,
    LLMConfig,
    Message,
    RoutingResult,
    ToolDefinitionRecord,
    ToolExecutionRecord,
    utcnow,
)


class MemoryStore:
    """In-memory implementation of the persistence contract.

    Used for tests and single-process development. Mirrors the constraints
    the SQL schema enforces, including one conversation per
    (channel, channel user, flow).
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.tool_executions: List[ToolExecutionRecord] = []
        self.analytics_events: List[Dict[str, Any]] = []
        self.system_logs: List[Dict[str, Any]] = []
        self.channel_configs: Dict[str, ChannelConfig] = {}
        self.flows: Dict[str, Flow] = {}
        self.flow_channels: List[FlowChannel] = []
        self.llm_configs: Dict[str, LLMConfig] = {}
        self.tool_definitions: Dict[str, ToolDefinitionRecord] = {}
        self.knowledge_chunks: List[KnowledgeChunk] = []
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    # seeding -------------------------------------------------------------

    def add_channel_config(self, channel: ChannelConfig) -> ChannelConfig:
        with self._data_lock:
            self.channel_configs[channel.id] = channel
            return channel

    def add_llm_config(self, llm: LLMConfig) -> LLMConfig:
        with self._data_lock:
            self.llm_configs[llm.id] = llm
            return llm

    def add_flow(self, flow: Flow, channel_ids: Iterable[str] = ()) -> Flow:
        with self._data_lock:
            self.flows[flow.id] = flow
            for channel_id in channel_ids:
                self.flow_channels.append(FlowChannel(flow_id=flow.id, channel_id=channel_id))
            return flow

    def set_flow_active(self, flow_id: str, active: bool) -> None:
        with self._data_lock:
            flow = self.flows.get(flow_id)
            if flow is None:
                raise ConstraintViolation("flow not found", {"flow_id": flow_id})
            flow.active = active

    def add_tool_definition(self, record: ToolDefinitionRecord) -> ToolDefinitionRecord:
        with self._data_lock:
            if any(
                existing.name == record.name and existing.id != record.id
                for existing in self.tool_definitions.values()
            ):
                raise ConstraintViolation("tool name exists", {"name": record.name})
            self.tool_definitions[record.id] = record
            return record

    def add_knowledge_chunk(self, chunk: KnowledgeChunk) -> KnowledgeChunk:
        with self._data_lock:
            self.knowledge_chunks.append(chunk)
            return chunk

    # channels ------------------------------------------------------------

    def list_channel_configs(self, channel_type: str, *, active_only: bool = True) -> List[ChannelConfig]:
        with self._data_lock:
            return [
                copy.deepcopy(channel)
                for channel in self.channel_configs.values()
                if channel.channel_type == channel_type and (channel.is_active or not active_only)
            ]

    def get_channel_config(self, channel_id: str) -> Optional[ChannelConfig]:
        with self._data_lock:
            channel = self.channel_configs.get(channel_id)
            return copy.deepcopy(channel) if channel else None

    # conversations -------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            return copy.deepcopy(conversation) if conversation else None

    def find_latest_conversation(
        self,
        channel: str,
        channel_user_id: str,
        *,
        flow_id: Optional[str] = None,
        with_flow: bool = False,
    ) -> Optional[Conversation]:
        with self._data_lock:
            candidates = [
                conv
                for conv in self.conversations.values()
                if conv.channel == channel
                and conv.channel_user_id == channel_user_id
                and (flow_id is None or conv.flow_id == flow_id)
                and (not with_flow or conv.flow_id is not None)
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda conv: conv.last_activity)
            return copy.deepcopy(latest)

    def create_conversation(
        self,
        channel: str,
        channel_user_id: str,
        *,
        flow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        with self._data_lock:
            if flow_id is not None:
                for existing in self.conversations.values():
                    if (
                        existing.channel == channel
                        and existing.channel_user_id == channel_user_id
                        and existing.flow_id == flow_id
                    ):
                        raise ConstraintViolation(
                            "conversation exists for flow",
                            {"channel": channel, "flow_id": flow_id},
                        )
            now = utcnow()
            conversation = Conversation(
                id=conversation_id or str(uuid.uuid4()),
                channel=channel,
                channel_user_id=channel_user_id,
                flow_id=flow_id,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
                last_activity=now,
            )
            self.conversations[conversation.id] = conversation
            self.messages.setdefault(conversation.id, [])
            return copy.deepcopy(conversation)

    def update_conversation(
        self,
        conversation_id: str,
        *,
        flow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        touch: bool = True,
    ) -> Conversation:
        with self._data_lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                raise ConstraintViolation("conversation not found", {"conversation_id": conversation_id})
            if flow_id is not None:
                conversation.flow_id = flow_id
            if metadata is not None:
                conversation.metadata = dict(metadata)
            now = utcnow()
            conversation.updated_at = now
            if touch:
                conversation.last_activity = now
            return copy.deepcopy(conversation)

    # messages ------------------------------------------------------------

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
        tokens_used: int = 0,
        cost: float = 0.0,
        idempotency_key: Optional[str] = None,
        source_namespace: Optional[str] = None,
        case_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Message:
        with self._data_lock:
            if conversation_id not in self.conversations:
                raise ConstraintViolation("conversation not found", {"conversation_id": conversation_id})
            if idempotency_key and any(
                msg.idempotency_key == idempotency_key
                for msg in self.messages.get(conversation_id, [])
            ):
                raise ConstraintViolation(
                    "idempotency key already used", {"idempotency_key": idempotency_key}
                )
            message = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                metadata=copy.deepcopy(metadata or {}),
                timestamp=timestamp or utcnow(),
                llm_provider=llm_provider,
                llm_model=llm_model,
                tokens_used=tokens_used,
                cost=cost,
                idempotency_key=idempotency_key,
                source_namespace=source_namespace,
                case_id=case_id,
            )
            self.messages.setdefault(conversation_id, []).append(message)
            return copy.deepcopy(message)

    def list_messages(
        self,
        conversation_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Message]:
        with self._data_lock:
            rows = [
                msg
                for msg in self.messages.get(conversation_id, [])
                if since is None or msg.timestamp >= since
            ]
            rows.sort(key=lambda msg: msg.timestamp)
            return copy.deepcopy(rows[:limit])

    def find_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        with self._data_lock:
            for messages in self.messages.values():
                for msg in messages:
                    if msg.role != "user":
                        continue
                    original = (msg.metadata or {}).get("originalMessage") or {}
                    if provider_message_id in (original.get("id"), original.get("messageId")):
                        return copy.deepcopy(msg)
            return None

    def find_assistant_message_by_idempotency_key(
        self, conversation_id: str, idempotency_key: str
    ) -> Optional[Message]:
        with self._data_lock:
            for msg in self.messages.get(conversation_id, []):
                if msg.role == "assistant" and msg.idempotency_key == idempotency_key:
                    return copy.deepcopy(msg)
            return None

    def last_external_assistant_message(self, conversation_id: str) -> Optional[Message]:
        with self._data_lock:
            tagged = [
                msg
                for msg in self.messages.get(conversation_id, [])
                if msg.role == "assistant"
                and ((msg.metadata or {}).get("external") or {}).get("namespace")
            ]
            if not tagged:
                return None
            return copy.deepcopy(max(tagged, key=lambda msg: msg.timestamp))

    # tool executions, analytics, logs ------------------------------------

    def add_tool_executions(self, records: Iterable[ToolExecutionRecord]) -> int:
        with self._data_lock:
            added = list(records)
            self.tool_executions.extend(copy.deepcopy(added))
            return len(added)

    def list_tool_executions(self, conversation_id: str) -> List[ToolExecutionRecord]:
        with self._data_lock:
            return [
                copy.deepcopy(record)
                for record in self.tool_executions
                if record.conversation_id == conversation_id
            ]

    def record_analytics_event(
        self,
        event_type: str,
        *,
        conversation_id: Optional[str] = None,
        channel_type: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._data_lock:
            self.analytics_events.append(
                {
                    "id": str(uuid.uuid4()),
                    "event_type": event_type,
                    "conversation_id": conversation_id,
                    "channel_type": channel_type,
                    "data": copy.deepcopy(data or {}),
                    "created_at": utcnow(),
                }
            )

    def log_system_event(
        self,
        level: str,
        message: str,
        *,
        service: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        stack_trace: Optional[str] = None,
    ) -> None:
        with self._data_lock:
            self.system_logs.append(
                {
                    "level": level,
                    "message": message,
                    "service": service,
                    "metadata": copy.deepcopy(metadata or {}),
                    "user_id": user_id,
                    "conversation_id": conversation_id,
                    "stack_trace": stack_trace,
                    "created_at": utcnow(),
                }
            )

    # flows ---------------------------------------------------------------

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._data_lock:
            flow = self.flows.get(flow_id)
            return copy.deepcopy(flow) if flow else None

    def _flow_rows(self, channel_type: str) -> List[Tuple[Flow, LLMConfig, FlowChannel, ChannelConfig]]:
        rows = []
        for link in self.flow_channels:
            if not link.active:
                continue
            flow = self.flows.get(link.flow_id)
            channel = self.channel_configs.get(link.channel_id)
            if flow is None or channel is None:
                continue
            if channel.channel_type != channel_type or not channel.is_active:
                continue
            llm = self.llm_configs.get(flow.llm_id or "")
            if llm is None:
                continue
            rows.append((flow, llm, link, channel))
        return rows

    @staticmethod
    def _routing_result(flow: Flow, llm: LLMConfig, channel: ChannelConfig) -> RoutingResult:
        flow_copy = copy.deepcopy(flow)
        return RoutingResult(
            flow=flow_copy,
            llm_provider=llm.provider,
            llm_model=llm.model,
            llm_config=copy.deepcopy(llm.config),
            enabled_tools=list(flow.enabled_tools),
            channel_config=copy.deepcopy(channel.config),
            channel_config_id=channel.id,
        )

    def get_flow_routing(
        self,
        flow_id: str,
        channel_type: str,
        *,
        requested_channel_id: Optional[str] = None,
        allow_inactive: bool = False,
    ) -> Optional[RoutingResult]:
        with self._data_lock:
            rows = [
                row
                for row in self._flow_rows(channel_type)
                if row[0].id == flow_id and (allow_inactive or row[0].active)
            ]
            if not rows:
                return None
            rows.sort(key=lambda row: (0 if row[3].id == requested_channel_id else 1, row[2].priority))
            flow, llm, _, channel = rows[0]
            return self._routing_result(flow, llm, channel)

    def list_routable_flows(
        self, channel_type: str, *, channel_config_id: Optional[str] = None
    ) -> List[RoutingResult]:
        with self._data_lock:
            rows = [
                row
                for row in self._flow_rows(channel_type)
                if row[0].active
                and row[1].active
                and (channel_config_id is None or row[3].id == channel_config_id)
            ]
            rows.sort(key=lambda row: row[0].priority)
            seen = set()
            results = []
            for flow, llm, _, channel in rows:
                if (flow.id, channel.id) in seen:
                    continue
                seen.add((flow.id, channel.id))
                results.append(self._routing_result(flow, llm, channel))
            return results

    # tools and knowledge -------------------------------------------------

    def list_active_tool_definitions(self) -> List[ToolDefinitionRecord]:
        with self._data_lock:
            records = [rec for rec in self.tool_definitions.values() if rec.active]
            records.sort(key=lambda rec: rec.created_at, reverse=True)
            return copy.deepcopy(records)

    def get_tool_definition(self, name: str) -> Optional[ToolDefinitionRecord]:
        with self._data_lock:
            for record in self.tool_definitions.values():
                if record.name == name:
                    return copy.deepcopy(record)
            return None

    def list_knowledge_chunks(self, flow_id: str) -> List[KnowledgeChunk]:
        with self._data_lock:
            return [copy.deepcopy(chunk) for chunk in self.knowledge_chunks if chunk.flow_id == flow_id]

    def ping(self) -> bool:
        return True
