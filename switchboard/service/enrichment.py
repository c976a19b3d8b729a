from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from switchboard.logging import get_logger
from switchboard.service.orchestrator import ToolOrchestrator
from switchboard.service.rag import RAGService
from switchboard.storage.context_store import generate_session_id, is_uuid
from switchboard.storage.models import ContextMessage, IncomingMessage, RoutingResult, parse_datetime

logger = get_logger(__name__)

EXTERNAL_CONTEXT_HINT = (
    "You may use the external_context data above to personalize and handle this conversation. "
    "If you have tools available to fetch or update external case details using the provided "
    "identifiers, use them when needed."
)


@dataclass
class ExternalAttachment:
    routing: Optional[RoutingResult]
    conversation_id: Optional[str] = None
    conversation_metadata: Dict[str, Any] = field(default_factory=dict)
    namespace: Optional[str] = None


def _truncate(value: Any, limit: int) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + "...[truncated]"


def format_external_context(context: Dict[str, Any], max_chars: int) -> Optional[str]:
    if not context:
        return None
    rendered = json.dumps(context, indent=2, default=str, ensure_ascii=False)
    if len(rendered) > max_chars:
        rendered = rendered[:max_chars] + "\n...truncated..."
    return f"EXTERNAL_CONTEXT_JSON:\n{rendered}"


class MessageEnricher:
    """Adds knowledge, external context and prior history before processing."""

    def __init__(
        self,
        store,
        orchestrator: ToolOrchestrator,
        rag: Optional[RAGService] = None,
        *,
        history_limit: int = 100,
        external_context_max_chars: int = 4000,
        log_external_context_json: bool = False,
        log_enhanced_system_prompt: bool = False,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.rag = rag
        self.history_limit = history_limit
        self.external_context_max_chars = external_context_max_chars
        self.log_external_context_json = log_external_context_json
        self.log_enhanced_system_prompt = log_enhanced_system_prompt

    def enhance_with_rag(self, routing: Optional[RoutingResult], query: str) -> Optional[RoutingResult]:
        if routing is None or self.rag is None:
            return routing
        query = (query or "").strip()
        if not query:
            return routing
        try:
            chunks = self.rag.search(routing.flow.id, query)
        except Exception as exc:
            logger.error("rag_search_failed", flow_id=routing.flow.id, error=str(exc))
            return routing
        if not chunks:
            return routing
        enhanced = copy.deepcopy(routing)
        enhanced.system_prompt = f"{routing.system_prompt}\n\n{self.rag.format_context_for_prompt(chunks)}"
        logger.info("rag_context_added", flow_id=routing.flow.id, chunks=len(chunks))
        return enhanced

    def _pick_namespace(self, conversation_id: str, external: Dict[str, Any]) -> Optional[str]:
        try:
            tagged = self.store.last_external_assistant_message(conversation_id)
        except Exception as exc:
            logger.warning("external_namespace_lookup_failed", conversation_id=conversation_id, error=str(exc))
            tagged = None
        if tagged is not None:
            namespace = ((tagged.metadata or {}).get("external") or {}).get("namespace")
            if isinstance(namespace, str) and namespace in external:
                return namespace

        latest: Optional[str] = None
        latest_at = None
        for namespace, entry in external.items():
            try:
                updated = parse_datetime((entry or {}).get("updated_at")) if isinstance(entry, dict) else None
            except ValueError:
                updated = None
            if updated is not None and (latest_at is None or updated > latest_at):
                latest, latest_at = namespace, updated
        return latest

    async def attach_external_context(
        self,
        message: IncomingMessage,
        routing: Optional[RoutingResult],
        preferred_conversation_id: Optional[str] = None,
    ) -> ExternalAttachment:
        channel_type = message.channel_type
        user_id = message.channel_user_id
        try:
            if preferred_conversation_id and is_uuid(preferred_conversation_id):
                conversation = self.store.get_conversation(preferred_conversation_id)
            else:
                conversation = self.store.find_latest_conversation(channel_type, user_id)
        except Exception as exc:
            logger.warning("external_context_lookup_failed", channel=channel_type, error=str(exc))
            return ExternalAttachment(routing=routing)
        if conversation is None:
            return ExternalAttachment(routing=routing)

        metadata = dict(conversation.metadata or {})
        message.metadata.setdefault("conversationId", conversation.id)
        attachment = ExternalAttachment(
            routing=routing, conversation_id=conversation.id, conversation_metadata=metadata
        )
        external = metadata.get("external_context")
        if not isinstance(external, dict) or not external:
            return attachment

        namespace = self._pick_namespace(conversation.id, external)
        attachment.namespace = namespace
        selected = {namespace: external[namespace]} if namespace else None
        logger.info(
            "external_context_found",
            conversation_id=conversation.id,
            namespaces=sorted(external)[:5],
            active_namespace=namespace,
        )
        if self.log_external_context_json and selected:
            logger.warning(
                "external_context_json",
                conversation_id=conversation.id,
                external_context=_truncate(selected, self.external_context_max_chars),
            )

        try:
            session_id = generate_session_id(channel_type, user_id, conversation.id)
            context = await self.orchestrator.get_or_create_context(
                session_id, conversation.id, channel_type, user_id
            )
            merged = {
                **(context.metadata or {}),
                **metadata,
                "external_context": {
                    **((context.metadata or {}).get("external_context") or {}),
                    **external,
                },
            }
            await self.orchestrator.update_context(
                session_id, {"conversation_id": conversation.id, "metadata": merged}
            )
        except Exception as exc:
            logger.warning("external_context_merge_failed", conversation_id=conversation.id, error=str(exc))

        if routing is not None and selected:
            text = format_external_context(selected, self.external_context_max_chars)
            if text:
                enhanced = copy.deepcopy(routing)
                enhanced.system_prompt = f"{routing.system_prompt}\n\n{text}\n\n{EXTERNAL_CONTEXT_HINT}"
                if self.log_enhanced_system_prompt:
                    logger.warning(
                        "enhanced_system_prompt",
                        conversation_id=conversation.id,
                        system_prompt=_truncate(enhanced.system_prompt, self.external_context_max_chars),
                    )
                attachment.routing = enhanced
        return attachment

    async def restore_history(self, conversation_id: Optional[str], channel_type: str, user_id: str) -> int:
        """Replace the session history with persisted turns.

        Only turns since the last externally tagged reply are restored, so an
        earlier campaign does not leak into the current one.
        """
        if not conversation_id or not is_uuid(conversation_id):
            return 0
        try:
            tagged = self.store.last_external_assistant_message(conversation_id)
            since = tagged.timestamp if tagged is not None else None
            rows = self.store.list_messages(conversation_id, since=since, limit=self.history_limit)
            if not rows:
                return 0
            session_id = generate_session_id(channel_type, user_id, conversation_id)
            await self.orchestrator.get_or_create_context(session_id, conversation_id, channel_type, user_id)
            history = [
                ContextMessage(role=row.role, content=row.content, timestamp=row.timestamp.isoformat())
                for row in rows
            ]
            await self.orchestrator.update_context(session_id, {"conversation_history": history})
        except Exception as exc:
            logger.warning("history_restore_failed", conversation_id=conversation_id, error=str(exc))
            return 0
        logger.info(
            "history_restored",
            conversation_id=conversation_id,
            messages=len(rows),
            since_external=since is not None,
        )
        return len(rows)
