from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from switchboard.logging import get_logger
from switchboard.service.channels import ChannelAdapter
from switchboard.service.errors import ValidationError
from switchboard.service.queue import (
    TELEGRAM_SENDING,
    WEBHOOK_INCOMING,
    WHATSAPP_SENDING,
    Job,
    JobQueue,
    QueueWorker,
)
from switchboard.storage.errors import ConstraintViolation
from switchboard.storage.models import ChannelType, OutgoingMessage

logger = get_logger(__name__)

SEND_QUEUES = {
    ChannelType.WHATSAPP.value: WHATSAPP_SENDING,
    ChannelType.TELEGRAM.value: TELEGRAM_SENDING,
}
# Replies to these channels travel back in the HTTP response
INLINE_CHANNELS = {ChannelType.WEBCHAT.value, ChannelType.EMAIL.value}


@dataclass
class DispatchResult:
    conversation_id: Optional[str]
    job_id: Optional[str] = None
    replayed: bool = False
    inline: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"conversationId": self.conversation_id}
        if self.replayed:
            data["idempotentReplay"] = True
        elif self.inline:
            data["inline"] = True
        else:
            data["queued"] = True
            data["jobId"] = self.job_id
        return data


class OutboundDispatcher:
    """Queue-backed outbound sends.

    There is no synchronous fallback: when the queue rejects a job the
    ``QueueUnavailable`` error reaches the caller.
    """

    def __init__(
        self,
        store,
        queue: JobQueue,
        *,
        attempts: int = 5,
        backoff_ms: int = 3000,
    ) -> None:
        self.store = store
        self.queue = queue
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _key_lock(self, conversation_id: str, idempotency_key: str) -> AsyncIterator[None]:
        key = f"{conversation_id}:{idempotency_key}"
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._key_holders[key] = self._key_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_holders[key] -= 1
            if not self._key_holders[key]:
                del self._key_holders[key]
                self._key_locks.pop(key, None)

    def already_sent(self, conversation_id: Optional[str], idempotency_key: Optional[str]) -> bool:
        if not conversation_id or not idempotency_key:
            return False
        try:
            existing = self.store.find_assistant_message_by_idempotency_key(conversation_id, idempotency_key)
        except Exception as exc:
            logger.warning("idempotency_lookup_failed", conversation_id=conversation_id, error=str(exc))
            return False
        return existing is not None

    async def _enqueue(
        self,
        channel_type: str,
        user_id: str,
        content: str,
        conversation_id: Optional[str],
        channel_config: Optional[Dict[str, Any]],
        metadata: Dict[str, Any],
    ) -> str:
        queue_name = SEND_QUEUES[channel_type]
        return await self.queue.add_job(
            queue_name,
            "send-message",
            {
                "userId": user_id,
                "conversationId": conversation_id,
                "message": {"content": content, "metadata": metadata},
                "channelConfig": channel_config or {},
            },
            attempts=self.attempts,
            backoff={"type": "exponential", "delay": self.backoff_ms},
        )

    async def send(
        self,
        channel_type: str,
        user_id: str,
        content: str,
        *,
        conversation_id: Optional[str] = None,
        channel_config: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        persist: bool = False,
        external: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Enqueue one reply.

        With ``persist`` the reply is also stored as an assistant message
        carrying the idempotency key, so a repeat request is answered with
        ``replayed=True`` and no second job.
        """
        if channel_type in INLINE_CHANNELS:
            return DispatchResult(conversation_id=conversation_id, inline=True)
        if channel_type not in SEND_QUEUES:
            raise ValidationError(
                f"Outbound sending for channel '{channel_type}' is not supported",
                detail={"channelType": channel_type},
            )

        if not (idempotency_key and conversation_id):
            job_id = await self._enqueue(
                channel_type, user_id, content, conversation_id, channel_config, dict(metadata or {})
            )
            if persist and conversation_id:
                self._persist(conversation_id, content, None, external)
            return DispatchResult(conversation_id=conversation_id, job_id=job_id)

        async with self._key_lock(conversation_id, idempotency_key):
            if self.already_sent(conversation_id, idempotency_key):
                logger.info(
                    "outbound_idempotent_replay",
                    conversation_id=conversation_id,
                    idempotency_key=idempotency_key,
                )
                return DispatchResult(conversation_id=conversation_id, replayed=True)
            job_id = await self._enqueue(
                channel_type,
                user_id,
                content,
                conversation_id,
                channel_config,
                {**(metadata or {}), "idempotencyKey": idempotency_key},
            )
            if persist:
                self._persist(conversation_id, content, idempotency_key, external)
        return DispatchResult(conversation_id=conversation_id, job_id=job_id)

    def _persist(
        self,
        conversation_id: str,
        content: str,
        idempotency_key: Optional[str],
        external: Optional[Dict[str, Any]],
    ) -> None:
        metadata: Dict[str, Any] = {"outbound": True, "idempotencyKey": idempotency_key}
        if external:
            metadata["external"] = external
        try:
            self.store.add_message(
                conversation_id,
                "assistant",
                content,
                metadata=metadata,
                idempotency_key=idempotency_key,
                source_namespace=(external or {}).get("namespace"),
                case_id=(external or {}).get("case_id"),
            )
        except ConstraintViolation:
            logger.info("outbound_message_exists", conversation_id=conversation_id, idempotency_key=idempotency_key)
        except Exception as exc:
            # the job is already queued
            logger.warning("outbound_persist_failed", conversation_id=conversation_id, error=str(exc))

    async def enqueue_incoming_webhook(
        self, body: Dict[str, Any], *, channel_type: str = "whatsapp", channel_id: Optional[str] = None
    ) -> str:
        payload: Dict[str, Any] = {"channelType": channel_type, "webhookBody": body}
        if channel_id:
            payload["channelId"] = channel_id
        return await self.queue.add_job(
            WEBHOOK_INCOMING,
            f"{channel_type}-webhook",
            payload,
            attempts=3,
            backoff={"type": "exponential", "delay": 2000},
        )


class ProviderSendingWorker(QueueWorker):
    """Delivers queued replies through one channel adapter."""

    def __init__(self, queue: JobQueue, adapter: ChannelAdapter, *, poll_interval: float = 1.0) -> None:
        super().__init__(queue, poll_interval=poll_interval)
        self.adapter = adapter

    async def handle(self, job: Job) -> Any:
        payload = job.payload
        message = payload.get("message") or {}
        outgoing = OutgoingMessage(
            channel_user_id=str(payload.get("userId") or ""),
            content=str(message.get("content") or ""),
            metadata=message.get("metadata") or {},
        )
        result = await self.adapter.send(payload.get("channelConfig") or None, outgoing)
        logger.info(
            "provider_message_sent",
            queue=self.queue_name,
            job_id=job.id,
            user_id=outgoing.channel_user_id,
            attempt=job.attempts_made + 1,
        )
        return result


class WhatsAppSendingWorker(ProviderSendingWorker):
    queue_name = WHATSAPP_SENDING


class TelegramSendingWorker(ProviderSendingWorker):
    queue_name = TELEGRAM_SENDING


class WebhookIncomingWorker(QueueWorker):
    """Runs queued inbound webhooks through the injected pipeline entry point."""

    queue_name = WEBHOOK_INCOMING

    def __init__(
        self,
        queue: JobQueue,
        processor: Callable[..., Awaitable[Any]],
        *,
        poll_interval: float = 1.0,
    ) -> None:
        super().__init__(queue, poll_interval=poll_interval)
        self.processor = processor

    async def handle(self, job: Job) -> Any:
        channel_type = job.payload.get("channelType") or ChannelType.WHATSAPP.value
        body = job.payload.get("webhookBody") or {}
        channel_id = job.payload.get("channelId")
        if channel_id:
            return await self.processor(channel_type, body, channel_id=channel_id)
        return await self.processor(channel_type, body)
