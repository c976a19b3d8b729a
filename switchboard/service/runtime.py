from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from switchboard.config import ContextStoreProvider, get_settings, reset_settings_cache
from switchboard.logging import get_logger
from switchboard.service.builtin_tools import builtin_tools
from switchboard.service.channel_identity import WhatsAppChannelIdentifier
from switchboard.service.channels import build_adapters
from switchboard.service.conversations import ConversationService
from switchboard.service.dispatch import (
    OutboundDispatcher,
    TelegramSendingWorker,
    WebhookIncomingWorker,
    WhatsAppSendingWorker,
)
from switchboard.service.enrichment import MessageEnricher
from switchboard.service.errors import QueueUnavailable, ValidationError
from switchboard.service.integrations import IntegrationService
from switchboard.service.orchestrator import ToolOrchestrator
from switchboard.service.permissions import PermissionManager
from switchboard.service.pipeline import (
    EmailPipeline,
    MessagePipeline,
    PipelineResult,
    TelegramPipeline,
    WebChatPipeline,
    WhatsAppPipeline,
)
from switchboard.service.processor import ConversationProcessor, OpenAIChatBackend, StubBackend
from switchboard.service.queue import JobQueue, MemoryJobQueue, QueueWorker, RedisJobQueue
from switchboard.service.rag import RAGService
from switchboard.service.routing import FlowRouter
from switchboard.service.sandbox import ExecutionEngine, build_tool_network_policy
from switchboard.service.tool_loader import ConnectorClient, DynamicToolLoader
from switchboard.service.tool_registry import ToolRegistry
from switchboard.storage.context_store import ContextStore, MemoryContextStore
from switchboard.storage.memory import MemoryStore
from switchboard.storage.models import ChannelType
from switchboard.storage.postgres import PostgresStore
from switchboard.storage.redis_cache import RedisContextStore, verify_connection

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            self.store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        redis_error: Exception | None = None
        self.redis_available = False
        if settings.redis_url and not settings.test_mode:
            try:
                verify_connection(settings.redis_url)
                self.redis_available = True
            except Exception as exc:
                redis_error = exc

        if not self.redis_available:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise QueueUnavailable(
                    "Redis is required for the outbound queue and shared session contexts; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else ("skipped" if settings.test_mode else "redis_url_missing"),
                message=(
                    f"Running without Redis under {fallback_mode}; queued jobs and session "
                    "contexts live in this process only."
                ),
                mode=fallback_mode,
            )

        self.context_store = self._build_context_store()
        self.queue: JobQueue = (
            RedisJobQueue(settings.redis_url) if self.redis_available else MemoryJobQueue()
        )

        self.permissions = PermissionManager(sweep_interval=settings.rate_limit_sweep_interval_seconds)
        self.registry = ToolRegistry()
        self.engine = ExecutionEngine(
            network_policy=build_tool_network_policy(
                allowlist=settings.tool_network_allowlist,
                proxy_url=settings.tool_fetch_proxy_url,
                connect_timeout=settings.tool_fetch_connect_timeout_seconds,
                total_timeout=settings.tool_fetch_timeout_seconds,
            ),
            query_executor=getattr(self.store, "run_readonly_query", None),
            timeout_seconds=settings.tool_timeout_seconds,
        )
        self.connectors = ConnectorClient(
            settings.connector_service_url, timeout=settings.connector_timeout_seconds
        )
        self.loader = DynamicToolLoader(self.store, self.engine, self.connectors)
        self.orchestrator = ToolOrchestrator(
            self.context_store,
            self.registry,
            self.permissions,
            self.loader,
            builtin_tools=builtin_tools(),
            enable_permission_checks=settings.enable_permission_checks,
            enable_rate_limiting=settings.enable_rate_limiting,
        )

        if settings.test_mode or not settings.llm_api_key:
            self.backend = StubBackend()
        else:
            self.backend = OpenAIChatBackend(
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                timeout=settings.llm_timeout_seconds,
            )
        self.processor = ConversationProcessor(
            self.orchestrator,
            self.backend,
            max_tool_rounds=settings.max_tool_rounds,
            default_model=settings.llm_default_model,
        )

        self.rag = RAGService(self.store)
        self.conversations = ConversationService(self.store)
        self.router = FlowRouter(self.store)
        self.enricher = MessageEnricher(
            self.store,
            self.orchestrator,
            self.rag,
            history_limit=settings.history_limit,
            external_context_max_chars=settings.external_context_max_chars,
            log_external_context_json=settings.log_external_context_json,
            log_enhanced_system_prompt=settings.log_enhanced_system_prompt,
        )
        self.dispatcher = OutboundDispatcher(
            self.store,
            self.queue,
            attempts=settings.dispatch_attempts,
            backoff_ms=settings.dispatch_backoff_ms,
        )
        self.integrations = IntegrationService(
            self.store, self.conversations, self.dispatcher, self.orchestrator
        )
        self.adapters = build_adapters(timeout=settings.provider_timeout_seconds)
        self.pipelines: Dict[str, MessagePipeline] = self._build_pipelines()

        poll = settings.queue_poll_interval_seconds
        self.workers: List[QueueWorker] = [
            WhatsAppSendingWorker(self.queue, self.adapters[ChannelType.WHATSAPP.value], poll_interval=poll),
            TelegramSendingWorker(self.queue, self.adapters[ChannelType.TELEGRAM.value], poll_interval=poll),
            WebhookIncomingWorker(self.queue, self.process_webhook, poll_interval=poll),
        ]
        self._started = False

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.redis_available,
            context_store=type(self.context_store).__name__,
            queue=type(self.queue).__name__,
            model_backend=self.backend.provider,
        )

    def _build_context_store(self) -> ContextStore:
        settings = self.settings
        if settings.context_store_provider is ContextStoreProvider.REDIS:
            if self.redis_available:
                return RedisContextStore(settings.redis_url, default_ttl=settings.context_ttl_seconds)
            logger.warning("context_store_redis_unavailable", fallback="memory")
        return MemoryContextStore(
            default_ttl=settings.context_ttl_seconds,
            sweep_interval=settings.context_sweep_interval_seconds,
        )

    def _build_pipelines(self) -> Dict[str, MessagePipeline]:
        services = (self.conversations, self.router, self.enricher, self.processor, self.dispatcher)
        serialize = self.settings.serialize_user_messages
        pipelines: List[MessagePipeline] = [
            WhatsAppPipeline(
                self.adapters[ChannelType.WHATSAPP.value],
                *services,
                serialize_user_messages=serialize,
                identifier=WhatsAppChannelIdentifier(self.store),
            ),
            TelegramPipeline(self.adapters[ChannelType.TELEGRAM.value], *services, serialize_user_messages=serialize),
            EmailPipeline(self.adapters[ChannelType.EMAIL.value], *services, serialize_user_messages=serialize),
            WebChatPipeline(self.adapters[ChannelType.WEBCHAT.value], *services, serialize_user_messages=serialize),
        ]
        return {pipeline.channel_type: pipeline for pipeline in pipelines}

    async def process_webhook(
        self, channel_type: str, payload: Any, *, channel_id: Optional[str] = None
    ) -> PipelineResult:
        pipeline = self.pipelines.get(channel_type)
        if pipeline is None:
            raise ValidationError(
                f"Unknown channel: {channel_type}",
                detail={"channelType": channel_type},
                error_code="invalid_channel",
            )
        return await pipeline.handle_webhook(payload, channel_id=channel_id)

    async def start(self, *, workers: bool = True) -> None:
        if self._started:
            return
        await self.orchestrator.start()
        if workers:
            for worker in self.workers:
                worker.start()
        self._started = True
        logger.info("runtime_started", workers=len(self.workers) if workers else 0)

    async def stop(self) -> None:
        if not self._started:
            return
        for worker in self.workers:
            await worker.stop()
        await self.orchestrator.stop()
        await self.queue.shutdown()
        self.engine.shutdown(wait=False)
        close = getattr(self.store, "close", None)
        if callable(close):
            close()
        self._started = False
        logger.info("runtime_stopped")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
