"""External systems attach namespaced case context to a conversation and send through it."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional, Tuple

from switchboard.logging import get_logger
from switchboard.service.conversations import ConversationService
from switchboard.service.dispatch import SEND_QUEUES, DispatchResult, OutboundDispatcher
from switchboard.service.errors import ValidationError
from switchboard.service.orchestrator import ToolOrchestrator
from switchboard.storage.context_store import generate_session_id, is_uuid
from switchboard.storage.models import ChannelType, Conversation, utcnow

logger = get_logger(__name__)


def normalize_user_id(channel_type: str, user_id: str) -> str:
    if channel_type == ChannelType.WHATSAPP.value:
        return re.sub(r"\D", "", str(user_id).split("@", 1)[0])
    return str(user_id).strip()


def merge_conversation_metadata(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = {**(existing or {}), **(incoming or {})}
    if (existing or {}).get("external_context") or (incoming or {}).get("external_context"):
        merged["external_context"] = {
            **((existing or {}).get("external_context") or {}),
            **((incoming or {}).get("external_context") or {}),
        }
    return merged


class IntegrationService:
    def __init__(
        self,
        store,
        conversations: ConversationService,
        dispatcher: OutboundDispatcher,
        orchestrator: ToolOrchestrator,
    ) -> None:
        self.store = store
        self.conversations = conversations
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator

    def _target_conversation(
        self, channel_type: str, user_id: str, flow_id: Optional[str]
    ) -> Tuple[str, Dict[str, Any], Optional[str]]:
        existing: Optional[Conversation] = None
        if flow_id:
            existing = self.store.find_latest_conversation(channel_type, user_id, flow_id=flow_id)
        if existing is None:
            latest = self.store.find_latest_conversation(channel_type, user_id)
            if latest is not None and not (flow_id and latest.flow_id and latest.flow_id != flow_id):
                existing = latest
        if existing is not None:
            return existing.id, dict(existing.metadata or {}), existing.flow_id
        conversation_id = self.conversations.create(
            channel_type, user_id, flow_id, {"source": "integration"}
        )
        logger.info("integration_conversation_created", conversation_id=conversation_id, flow_id=flow_id)
        return conversation_id, {"source": "integration"}, flow_id

    async def upsert_external_context(
        self,
        channel_type: str,
        user_id: str,
        envelope: Dict[str, Any],
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, Dict[str, Any]]:
        """Store ``envelope`` under ``external_context[namespace]`` of the target conversation.

        The target is the user's conversation for ``envelope.routing.flowId``
        when one is given, else the latest conversation; a different flow
        gets a fresh conversation.
        """
        namespace = envelope.get("namespace")
        case_id = envelope.get("caseId")
        if not namespace or not case_id:
            raise ValidationError("envelope.namespace and envelope.caseId are required")
        routing = envelope.get("routing") or {}
        flow_id = routing.get("flowId") if is_uuid(routing.get("flowId")) else None

        conversation_id, existing, bound_flow = self._target_conversation(channel_type, user_id, flow_id)
        previous = (existing.get("external_context") or {}).get(namespace) or {}
        merged = merge_conversation_metadata(
            existing,
            {
                **(extra_metadata or {}),
                "external_context": {
                    namespace: {
                        **previous,
                        "case_id": case_id,
                        "refs": envelope.get("refs") or {},
                        "seed": envelope.get("seed") or {},
                        "routing": routing,
                        "updated_at": utcnow().isoformat(),
                    }
                },
            },
        )
        self.store.update_conversation(
            conversation_id,
            flow_id=flow_id if flow_id and not bound_flow else None,
            metadata=merged,
            touch=True,
        )
        await self._refresh_session_metadata(channel_type, user_id, conversation_id, merged)
        logger.info(
            "external_context_upserted",
            conversation_id=conversation_id,
            namespace=namespace,
            case_id=case_id,
            flow_id=flow_id,
        )
        return conversation_id, merged

    async def _refresh_session_metadata(
        self, channel_type: str, user_id: str, conversation_id: str, metadata: Dict[str, Any]
    ) -> None:
        session_id = generate_session_id(channel_type, user_id, conversation_id)
        try:
            context = await self.orchestrator.get_context(session_id)
            if context is None:
                return
            await self.orchestrator.update_context(
                session_id, {"metadata": {**(context.metadata or {}), **metadata}}
            )
        except Exception as exc:
            logger.warning("session_metadata_refresh_failed", session_id=session_id, error=str(exc))

    def _channel_config(
        self, channel_type: str, requested_id: Optional[str], metadata: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        for channel_id in (requested_id, metadata.get("channel_config_id")):
            if channel_id and is_uuid(channel_id):
                config = self.conversations.get_channel_config(channel_id, channel_type)
                if config is not None:
                    return config
        channels = self.store.list_channel_configs(channel_type)
        return channels[0].config if channels else None

    async def send_outbound(
        self,
        channel_type: str,
        user_id: str,
        message: str,
        envelope: Dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
        conversation_metadata: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        if channel_type not in SEND_QUEUES:
            raise ValidationError(
                f"Outbound sending for channel '{channel_type}' is not supported",
                detail={"channelType": channel_type},
            )
        if not (message or "").strip():
            raise ValidationError("message is required")
        user_id = normalize_user_id(channel_type, user_id)
        conversation_id, merged = await self.upsert_external_context(
            channel_type, user_id, envelope, conversation_metadata
        )
        requested = (envelope.get("routing") or {}).get("channelConfigId")
        channel_config = self._channel_config(channel_type, requested, merged)
        logger.info(
            "integration_outbound",
            channel=channel_type,
            conversation_id=conversation_id,
            namespace=envelope.get("namespace"),
            has_idempotency_key=bool(idempotency_key),
            provider=(channel_config or {}).get("provider"),
        )
        return await self.dispatcher.send(
            channel_type,
            user_id,
            message.strip(),
            conversation_id=conversation_id,
            channel_config=channel_config,
            idempotency_key=idempotency_key,
            metadata={"source": "integration"},
            persist=True,
            external={"namespace": envelope.get("namespace"), "case_id": envelope.get("caseId")},
        )
