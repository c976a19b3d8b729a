"""Durable conversation bookkeeping for the webhook pipelines.

A (channel, user) pair may own several conversations, at most one per flow.
Switching flows opens a new conversation instead of rebinding the old one.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from typing import Any, Dict, Optional

from switchboard.logging import get_logger, sanitize_error_message
from switchboard.storage.context_store import is_uuid
from switchboard.storage.errors import ConstraintViolation
from switchboard.storage.models import (
    Conversation,
    IncomingMessage,
    ProcessingResult,
    RoutingResult,
    ToolExecution,
    ToolExecutionRecord,
)

logger = get_logger(__name__)


@dataclass
class ConversationFlow:
    """Flow bound to the user's most recent flow-bearing conversation."""

    conversation_id: str
    routing: Optional[RoutingResult] = None
    flow_inactive: bool = False


def _db_status(execution: ToolExecution) -> str:
    if execution.status == "success":
        return "success"
    if execution.status == "timeout" or "timed out" in (execution.error or "").lower():
        return "timeout"
    return "error"


def extract_explicit_flow_id(
    conversation_metadata: Optional[Dict[str, Any]],
    message_metadata: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Flow id pinned by the message, the conversation, or an external context namespace."""
    for source in (message_metadata, conversation_metadata):
        if isinstance(source, dict) and is_uuid(source.get("flowId")):
            return source["flowId"]
    if not isinstance(conversation_metadata, dict):
        return None
    external = conversation_metadata.get("external_context")
    if not isinstance(external, dict):
        return None
    for entry in external.values():
        flow_id = ((entry or {}).get("routing") or {}).get("flowId") if isinstance(entry, dict) else None
        if is_uuid(flow_id):
            return flow_id
    return None


def originated_by_flow(conversation_metadata: Optional[Dict[str, Any]], flow_id: str) -> bool:
    """True when an external context namespace routed this conversation to ``flow_id``."""
    external = (conversation_metadata or {}).get("external_context")
    if not isinstance(external, dict):
        return False
    return any(
        isinstance(entry, dict) and (entry.get("routing") or {}).get("flowId") == flow_id
        for entry in external.values()
    )


class ConversationService:
    def __init__(self, store) -> None:
        self.store = store

    # lookups -------------------------------------------------------------

    def is_duplicate(self, provider_message_id: Optional[str]) -> bool:
        if not provider_message_id:
            return False
        try:
            return self.store.find_message_by_provider_id(provider_message_id) is not None
        except Exception as exc:
            logger.warning("dedup_check_failed", message_id=provider_message_id, error=str(exc))
            return False

    def try_load_explicit_flow_routing(
        self,
        flow_id: str,
        channel_type: str,
        requested_channel_id: Optional[str] = None,
        allow_inactive: bool = False,
    ) -> Optional[RoutingResult]:
        try:
            return self.store.get_flow_routing(
                flow_id,
                channel_type,
                requested_channel_id=requested_channel_id,
                allow_inactive=allow_inactive,
            )
        except Exception as exc:
            logger.error("flow_routing_load_failed", flow_id=flow_id, error=str(exc))
            return None

    def try_load_flow_from_conversation(
        self,
        channel_type: str,
        user_id: str,
        requested_channel_id: Optional[str] = None,
    ) -> Optional[ConversationFlow]:
        try:
            conversation = self.store.find_latest_conversation(channel_type, user_id, with_flow=True)
        except Exception as exc:
            logger.error("conversation_flow_lookup_failed", channel=channel_type, error=str(exc))
            return None
        if conversation is None or not conversation.flow_id:
            return None
        active = self.try_load_explicit_flow_routing(
            conversation.flow_id, channel_type, requested_channel_id, allow_inactive=False
        )
        if active is not None:
            return ConversationFlow(conversation_id=conversation.id, routing=active)
        inactive = self.try_load_explicit_flow_routing(
            conversation.flow_id, channel_type, requested_channel_id, allow_inactive=True
        )
        if inactive is not None:
            logger.info(
                "conversation_flow_inactive",
                conversation_id=conversation.id,
                flow_id=conversation.flow_id,
            )
            return ConversationFlow(conversation_id=conversation.id, flow_inactive=True)
        return None

    def find_conversation(
        self, preferred_id: Optional[str], channel_type: str, user_id: str
    ) -> Optional[Conversation]:
        try:
            if preferred_id and is_uuid(preferred_id):
                return self.store.get_conversation(preferred_id)
            return self.store.find_latest_conversation(channel_type, user_id)
        except Exception as exc:
            logger.warning("conversation_lookup_failed", channel=channel_type, error=str(exc))
            return None

    def get_channel_config(self, channel_id: Optional[str], channel_type: str) -> Optional[Dict[str, Any]]:
        if not channel_id:
            return None
        try:
            channel = self.store.get_channel_config(channel_id)
        except Exception as exc:
            logger.error("channel_config_lookup_failed", channel_id=channel_id, error=str(exc))
            return None
        if channel is None or not channel.is_active or channel.channel_type != channel_type:
            logger.warning("channel_config_unavailable", channel_id=channel_id)
            return None
        return channel.config

    def channel_config_for_routing(self, routing: RoutingResult, channel_type: str) -> Optional[Dict[str, Any]]:
        if routing.channel_config:
            return routing.channel_config
        return self.get_channel_config(routing.channel_config_id, channel_type)

    def log_system_event(self, level: str, message: str, **kwargs: Any) -> None:
        try:
            self.store.log_system_event(level, message, **kwargs)
        except Exception as exc:
            logger.error("system_event_log_failed", level=level, error=str(exc))

    # persistence ---------------------------------------------------------

    def _find_by_flow(self, channel_type: str, user_id: str, flow_id: str) -> Optional[Conversation]:
        return self.store.find_latest_conversation(channel_type, user_id, flow_id=flow_id)

    def create(
        self,
        channel_type: str,
        user_id: str,
        flow_id: Optional[str],
        metadata: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> str:
        try:
            return self.store.create_conversation(
                channel_type,
                user_id,
                flow_id=flow_id,
                metadata=metadata,
                conversation_id=conversation_id,
            ).id
        except ConstraintViolation:
            # a concurrent request bound this flow first
            existing = self._find_by_flow(channel_type, user_id, flow_id) if flow_id else None
            if existing is None:
                raise
            logger.info("conversation_create_raced", conversation_id=existing.id, flow_id=flow_id)
            return existing.id

    def resolve_conversation(
        self,
        message: IncomingMessage,
        conversation_id: Optional[str],
        routing: Optional[RoutingResult],
    ) -> str:
        channel_type = message.channel_type
        user_id = message.channel_user_id
        flow_id = routing.flow.id if routing else None

        existing: Optional[Conversation] = None
        if conversation_id and is_uuid(conversation_id):
            existing = self.store.get_conversation(conversation_id)
        if existing is None and flow_id:
            existing = self._find_by_flow(channel_type, user_id, flow_id)
        if existing is None:
            existing = self.store.find_latest_conversation(channel_type, user_id)

        channel_config_id = (
            message.metadata.get("channelId")
            or message.metadata.get("channel_config_id")
            or (routing.channel_config_id if routing else None)
        )
        if channel_config_id and not is_uuid(str(channel_config_id)):
            logger.warning("channel_config_id_invalid", channel_config_id=channel_config_id)
            channel_config_id = None

        new_metadata: Dict[str, Any] = {
            "flowId": flow_id,
            "flowName": routing.flow.name if routing else None,
        }
        if channel_config_id:
            new_metadata["channel_config_id"] = str(channel_config_id)

        if existing is None:
            return self.create(
                channel_type,
                user_id,
                flow_id,
                new_metadata,
                conversation_id if is_uuid(conversation_id) else None,
            )

        if flow_id and existing.flow_id and existing.flow_id != flow_id:
            logger.info(
                "conversation_flow_switch",
                previous_conversation_id=existing.id,
                previous_flow_id=existing.flow_id,
                flow_id=flow_id,
            )
            try:
                return self.create(channel_type, user_id, flow_id, new_metadata)
            except ConstraintViolation as exc:
                logger.warning("conversation_create_failed", conversation_id=existing.id, error=exc.message)
                return existing.id

        metadata = dict(existing.metadata or {})
        changed = False
        if channel_config_id and not metadata.get("channel_config_id"):
            metadata["channel_config_id"] = str(channel_config_id)
            changed = True
        bind = flow_id if flow_id and not existing.flow_id else None
        self.store.update_conversation(
            existing.id,
            flow_id=bind,
            metadata=metadata if changed else None,
            touch=True,
        )
        return existing.id

    def save_conversation_and_messages(
        self,
        message: IncomingMessage,
        result: ProcessingResult,
        routing: Optional[RoutingResult],
        *,
        conversation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        external: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Write the user turn, the reply, its tool executions and an analytics event.

        Returns the durable conversation id, or None when persistence failed.
        Failures are logged and never raised.
        """
        try:
            conv_id = self.resolve_conversation(message, conversation_id or result.conversation_id, routing)
            provider_id = message.provider_message_id
            self.store.add_message(
                conv_id,
                "user",
                message.content,
                metadata={
                    "channelType": message.channel_type,
                    "userId": message.channel_user_id,
                    "originalMessage": {
                        "id": provider_id or message.id,
                        "messageId": provider_id,
                        "content": message.content,
                        "metadata": message.metadata,
                    },
                },
                timestamp=message.timestamp,
            )
            assistant_meta: Dict[str, Any] = {
                "processingTimeMs": result.processing_time_ms,
                "toolExecutions": len(result.tool_executions),
                "flowId": routing.flow.id if routing else None,
                "flowName": routing.flow.name if routing else None,
            }
            if idempotency_key:
                assistant_meta["idempotencyKey"] = idempotency_key
            if external:
                assistant_meta["external"] = external
            reply = self.store.add_message(
                conv_id,
                "assistant",
                result.outgoing_message.content,
                metadata=assistant_meta,
                llm_provider=result.llm_provider,
                llm_model=result.llm_model,
                tokens_used=result.tokens_used,
                cost=result.cost,
                idempotency_key=idempotency_key,
                source_namespace=(external or {}).get("namespace"),
                case_id=(external or {}).get("case_id"),
            )
            if result.tool_executions:
                self.store.add_tool_executions(
                    ToolExecutionRecord(
                        id=execution.id,
                        conversation_id=conv_id,
                        message_id=reply.id,
                        tool_name=execution.tool_name,
                        parameters=execution.parameters,
                        result=execution.result,
                        status=_db_status(execution),
                        execution_time_ms=execution.execution_time_ms,
                        error_message=execution.error,
                        executed_at=execution.executed_at,
                    )
                    for execution in result.tool_executions
                )
            try:
                self.store.record_analytics_event(
                    "message_processed",
                    conversation_id=conv_id,
                    channel_type=message.channel_type,
                    data={
                        "flowId": assistant_meta["flowId"],
                        "flowName": assistant_meta["flowName"],
                        "toolExecutions": len(result.tool_executions),
                        "latencyMs": result.processing_time_ms,
                        "tokens": result.tokens_used,
                        "cost": result.cost,
                        "llmProvider": result.llm_provider,
                    },
                )
            except Exception as exc:
                logger.warning("analytics_event_failed", conversation_id=conv_id, error=str(exc))
            logger.info(
                "conversation_saved",
                conversation_id=conv_id,
                tool_executions=len(result.tool_executions),
            )
            return conv_id
        except Exception as exc:
            logger.error(
                "conversation_save_failed",
                error=str(exc),
                channel=message.channel_type,
                user_id=message.channel_user_id,
            )
            self.log_system_event(
                "error",
                f"Failed to save conversation: {sanitize_error_message(str(exc))}",
                service="webhooks",
                metadata={"channelType": message.channel_type, "errorName": type(exc).__name__},
                user_id=message.channel_user_id,
                stack_trace=traceback.format_exc(),
            )
            return None

    def log_tool_executions(self, result: ProcessingResult, message: IncomingMessage, conversation_id: Optional[str]) -> None:
        for execution in result.tool_executions:
            if execution.status == "failed":
                self.log_system_event(
                    "error",
                    f"Tool execution failed: {execution.tool_name}",
                    service="tools",
                    metadata={
                        "toolName": execution.tool_name,
                        "parameters": execution.parameters,
                        "error": execution.error,
                        "executionTimeMs": execution.execution_time_ms,
                        "channel": message.channel_type,
                    },
                    stack_trace=execution.error,
                    user_id=message.channel_user_id,
                    conversation_id=conversation_id,
                )
            elif execution.status == "success":
                self.log_system_event(
                    "info",
                    f"Tool executed successfully: {execution.tool_name}",
                    service="tools",
                    metadata={
                        "toolName": execution.tool_name,
                        "executionTimeMs": execution.execution_time_ms,
                        "channel": message.channel_type,
                    },
                    user_id=message.channel_user_id,
                    conversation_id=conversation_id,
                )
