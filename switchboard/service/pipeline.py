"""Inbound webhook pipelines.

Every channel runs the same steps: normalize, deduplicate, resolve a flow,
enrich the prompt, process, persist, dispatch. Channels differ in how
payloads are parsed, how the receiving channel is identified and how the
reply leaves the system.

Flow resolution stops at the first step that yields an answer:

1. an active flow named by the message itself
2. the flow bound to the user's latest conversation (inactive means silence)
3. an explicit flow id from the message, the conversation, or its external
   context routing
4. the routing conditions of the channel's active flows
5. no flow at all, which still produces and records a reply
"""

from __future__ import annotations

import asyncio
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from switchboard.logging import get_logger, message_context, sanitize_error_message
from switchboard.service.channel_identity import WhatsAppChannelIdentifier
from switchboard.service.channels import ChannelAdapter, is_status_only_payload
from switchboard.service.conversations import (
    ConversationService,
    extract_explicit_flow_id,
    originated_by_flow,
)
from switchboard.service.dispatch import DispatchResult, OutboundDispatcher
from switchboard.service.enrichment import MessageEnricher
from switchboard.service.errors import DuplicateMessage, FlowInactive
from switchboard.service.processor import ConversationProcessor
from switchboard.service.routing import FlowRouter
from switchboard.storage.context_store import is_uuid
from switchboard.storage.models import ChannelType, IncomingMessage, RoutingResult

logger = get_logger(__name__)

NO_OP = "no_op"
DUPLICATE = "duplicate"
FLOW_INACTIVE = "flow_inactive"
PROCESSED = "processed"
FAILED = "failed"


@dataclass
class PipelineResult:
    outcome: str
    conversation_id: Optional[str] = None
    flow_id: Optional[str] = None
    reply: Optional[str] = None
    dispatch: Optional[DispatchResult] = None
    dispatch_error: Optional[str] = None
    error: Optional[str] = None
    tool_executions: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"outcome": self.outcome}
        if self.conversation_id:
            data["conversationId"] = self.conversation_id
        if self.flow_id:
            data["flowId"] = self.flow_id
        if self.reply is not None:
            data["response"] = self.reply
        if self.dispatch is not None:
            data["dispatch"] = self.dispatch.to_dict()
        if self.dispatch_error:
            data["dispatchError"] = self.dispatch_error
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class FlowResolution:
    routing: Optional[RoutingResult] = None
    conversation_id: Optional[str] = None
    conversation_metadata: Dict[str, Any] = field(default_factory=dict)
    inactive: bool = False
    source: str = "none"


class MessagePipeline:
    """Channel independent webhook pipeline; subclasses adapt payload handling."""

    channel_type: str = ""

    def __init__(
        self,
        adapter: ChannelAdapter,
        conversations: ConversationService,
        router: FlowRouter,
        enricher: MessageEnricher,
        processor: ConversationProcessor,
        dispatcher: OutboundDispatcher,
        *,
        serialize_user_messages: bool = True,
    ) -> None:
        self.adapter = adapter
        self.conversations = conversations
        self.router = router
        self.enricher = enricher
        self.processor = processor
        self.dispatcher = dispatcher
        self.serialize_user_messages = serialize_user_messages
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    # payload hooks -------------------------------------------------------

    def is_no_op(self, payload: Any) -> bool:
        return False

    def identify_channel(self, payload: Any) -> Optional[str]:
        return None

    def reply_metadata(self, message: IncomingMessage) -> Dict[str, Any]:
        return {}

    # entry points --------------------------------------------------------

    async def handle_webhook(self, payload: Any, *, channel_id: Optional[str] = None) -> PipelineResult:
        if self.is_no_op(payload):
            logger.debug("webhook_no_op", channel=self.channel_type)
            return PipelineResult(outcome=NO_OP)
        identified = channel_id or self.identify_channel(payload)
        message = self.adapter.normalize(payload)
        if message is None:
            logger.debug("webhook_without_message", channel=self.channel_type)
            return PipelineResult(outcome=NO_OP)
        if identified:
            message.metadata.setdefault("channelId", identified)
        return await self.handle_message(message)

    async def handle_message(self, message: IncomingMessage) -> PipelineResult:
        with message_context(message.channel_type, message.channel_user_id):
            if not self.serialize_user_messages:
                return await self._handle(message)
            key = f"{message.channel_type}:{message.channel_user_id}"
            lock = self._user_locks.setdefault(key, asyncio.Lock())
            self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
            try:
                async with lock:
                    return await self._handle(message)
            finally:
                self._lock_holders[key] -= 1
                if not self._lock_holders[key]:
                    del self._lock_holders[key]
                    self._user_locks.pop(key, None)

    # steps ---------------------------------------------------------------

    def resolve_flow(self, message: IncomingMessage) -> FlowResolution:
        channel_type = message.channel_type
        user_id = message.channel_user_id
        requested_channel = message.metadata.get("channelId")

        pinned = message.metadata.get("flowId")
        if is_uuid(pinned):
            routing = self.conversations.try_load_explicit_flow_routing(pinned, channel_type, requested_channel)
            if routing is not None:
                # resolve_conversation picks the conversation bound to this flow or opens one
                return FlowResolution(routing=routing, source="message")

        bound = self.conversations.try_load_flow_from_conversation(channel_type, user_id, requested_channel)
        if bound is not None and bound.flow_inactive:
            return FlowResolution(conversation_id=bound.conversation_id, inactive=True, source="conversation")

        preferred = bound.conversation_id if bound else message.metadata.get("conversationId")
        conversation = self.conversations.find_conversation(preferred, channel_type, user_id)
        conversation_id = conversation.id if conversation else None
        conversation_metadata = dict(conversation.metadata or {}) if conversation else {}

        if bound is not None and bound.routing is not None:
            return FlowResolution(
                routing=bound.routing,
                conversation_id=bound.conversation_id,
                conversation_metadata=conversation_metadata,
                source="conversation",
            )

        explicit = extract_explicit_flow_id(conversation_metadata, message.metadata)
        if explicit:
            routing = self.conversations.try_load_explicit_flow_routing(explicit, channel_type, requested_channel)
            if routing is not None:
                return FlowResolution(routing, conversation_id, conversation_metadata, source="explicit")
            inactive = self.conversations.try_load_explicit_flow_routing(
                explicit, channel_type, requested_channel, allow_inactive=True
            )
            if inactive is not None:
                resuming = (
                    conversation is not None
                    and conversation.flow_id is None
                    and originated_by_flow(conversation_metadata, explicit)
                )
                if resuming:
                    logger.info("explicit_flow_inactive_resumed", flow_id=explicit, conversation_id=conversation_id)
                    return FlowResolution(inactive, conversation_id, conversation_metadata, source="explicit")
                return FlowResolution(
                    conversation_id=conversation_id,
                    conversation_metadata=conversation_metadata,
                    inactive=True,
                    source="explicit",
                )
            logger.warning("explicit_flow_not_found", flow_id=explicit, channel=channel_type)

        try:
            routed = self.router.route(message)
        except Exception as exc:
            logger.error("flow_routing_failed", channel=channel_type, error=str(exc))
            routed = None
        return FlowResolution(
            routing=routed,
            conversation_id=conversation_id,
            conversation_metadata=conversation_metadata,
            source="router" if routed else "none",
        )

    def screen(self, message: IncomingMessage) -> FlowResolution:
        """Deduplicate and resolve the flow.

        Raises ``DuplicateMessage`` or ``FlowInactive`` when the message must
        not be answered.
        """
        provider_id = message.provider_message_id
        if self.conversations.is_duplicate(provider_id):
            raise DuplicateMessage("message already processed", detail={"messageId": provider_id})
        resolution = self.resolve_flow(message)
        if resolution.inactive:
            raise FlowInactive(
                "flow is inactive",
                detail={"conversationId": resolution.conversation_id, "source": resolution.source},
            )
        return resolution

    def _bind_conversation(self, message: IncomingMessage, resolution: FlowResolution) -> Optional[str]:
        try:
            return self.conversations.resolve_conversation(message, resolution.conversation_id, resolution.routing)
        except Exception as exc:
            logger.error("conversation_bind_failed", channel=message.channel_type, error=str(exc))
            return resolution.conversation_id

    async def _handle(self, message: IncomingMessage) -> PipelineResult:
        try:
            return await self._run(message)
        except Exception as exc:
            conversation_id = message.metadata.get("conversationId")
            error = sanitize_error_message(str(exc))
            logger.exception(
                "webhook_processing_failed",
                channel=message.channel_type,
                user_id=message.channel_user_id,
                conversation_id=conversation_id,
                error_type=type(exc).__name__,
                error=error,
            )
            self.conversations.log_system_event(
                "error",
                f"Webhook processing failed: {error}",
                service="webhooks",
                metadata={"channelType": message.channel_type, "errorName": type(exc).__name__},
                user_id=message.channel_user_id,
                conversation_id=conversation_id,
                stack_trace=traceback.format_exc(),
            )
            return PipelineResult(outcome=FAILED, conversation_id=conversation_id, error=type(exc).__name__)

    async def _run(self, message: IncomingMessage) -> PipelineResult:
        started = time.monotonic()
        channel_type = message.channel_type
        user_id = message.channel_user_id

        try:
            resolution = self.screen(message)
        except DuplicateMessage as exc:
            logger.info("duplicate_message_skipped", channel=channel_type, message_id=exc.detail.get("messageId"))
            return PipelineResult(outcome=DUPLICATE)
        except FlowInactive as exc:
            logger.info(
                "flow_inactive_silence",
                channel=channel_type,
                conversation_id=exc.detail.get("conversationId"),
                source=exc.detail.get("source"),
            )
            return PipelineResult(outcome=FLOW_INACTIVE, conversation_id=exc.detail.get("conversationId"))

        routing = resolution.routing
        if routing is None:
            logger.info("flowless_processing", channel=channel_type, user_id=user_id)
        conversation_id = self._bind_conversation(message, resolution)
        if conversation_id:
            message.metadata["conversationId"] = conversation_id

        routing = self.enricher.enhance_with_rag(routing, message.content)
        attachment = await self.enricher.attach_external_context(message, routing, conversation_id)
        routing = attachment.routing
        await self.enricher.restore_history(conversation_id, channel_type, user_id)

        result = await self.processor.process_message(message, routing)
        external = None
        if attachment.namespace:
            entry = (attachment.conversation_metadata.get("external_context") or {}).get(attachment.namespace) or {}
            external = {"namespace": attachment.namespace, "case_id": entry.get("case_id")}
        saved_id = self.conversations.save_conversation_and_messages(
            message, result, routing, conversation_id=conversation_id, external=external
        )
        conversation_id = saved_id or conversation_id
        self.conversations.log_tool_executions(result, message, conversation_id)

        outcome = PipelineResult(
            outcome=PROCESSED,
            conversation_id=conversation_id,
            flow_id=routing.flow.id if routing else None,
            reply=result.outgoing_message.content,
            tool_executions=len(result.tool_executions),
            metadata=result.metadata,
        )
        channel_config = (
            self.conversations.channel_config_for_routing(routing, channel_type)
            if routing
            else self.conversations.get_channel_config(message.metadata.get("channelId"), channel_type)
        )
        try:
            outcome.dispatch = await self.dispatcher.send(
                channel_type,
                user_id,
                result.outgoing_message.content,
                conversation_id=conversation_id,
                channel_config=channel_config,
                metadata=self.reply_metadata(message),
            )
        except Exception as exc:
            logger.critical(
                "outbound_dispatch_failed",
                channel=channel_type,
                user_id=user_id,
                conversation_id=conversation_id,
                error=str(exc),
            )
            self.conversations.log_system_event(
                "critical",
                f"CRITICAL: reply not dispatched: {exc}",
                service="webhooks",
                metadata={"channelType": channel_type, "errorName": type(exc).__name__},
                user_id=user_id,
                conversation_id=conversation_id,
            )
            outcome.dispatch_error = str(exc)

        logger.info(
            "webhook_processed",
            channel=channel_type,
            conversation_id=conversation_id,
            flow_id=outcome.flow_id,
            flow_source=resolution.source,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return outcome


class WhatsAppPipeline(MessagePipeline):
    channel_type = ChannelType.WHATSAPP.value

    def __init__(self, *args: Any, identifier: WhatsAppChannelIdentifier, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.identifier = identifier

    def is_no_op(self, payload: Any) -> bool:
        return is_status_only_payload(payload)

    def identify_channel(self, payload: Any) -> Optional[str]:
        return self.identifier.identify(payload)


class TelegramPipeline(MessagePipeline):
    channel_type = ChannelType.TELEGRAM.value

    def reply_metadata(self, message: IncomingMessage) -> Dict[str, Any]:
        chat_id = message.metadata.get("chatId")
        return {"chatId": chat_id} if chat_id is not None else {}


class EmailPipeline(MessagePipeline):
    channel_type = ChannelType.EMAIL.value


class WebChatPipeline(MessagePipeline):
    channel_type = ChannelType.WEBCHAT.value
