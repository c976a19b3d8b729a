from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from switchboard.logging import get_logger
from switchboard.service.errors import ServiceError, ToolExecutionFailed, ToolNotFound
from switchboard.service.permissions import PermissionManager
from switchboard.service.tool_loader import DynamicToolLoader
from switchboard.service.tool_registry import ToolDefinition, ToolRegistry
from switchboard.storage.context_store import ContextStore
from switchboard.storage.models import SessionContext, ToolExecution, utcnow

logger = get_logger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]


class ToolOrchestrator:
    """Facade over the context store, tool registry, permissions and loader.

    Services are passed in explicitly so several instances can coexist in one
    process and tests can substitute fakes.
    """

    def __init__(
        self,
        context_store: ContextStore,
        registry: ToolRegistry,
        permissions: PermissionManager,
        loader: Optional[DynamicToolLoader] = None,
        *,
        builtin_tools: Sequence[ToolDefinition] = (),
        enable_permission_checks: bool = True,
        enable_rate_limiting: bool = True,
    ) -> None:
        self.context_store = context_store
        self.registry = registry
        self.permissions = permissions
        self.loader = loader
        self.builtin_tools = list(builtin_tools)
        self.enable_permission_checks = enable_permission_checks
        self.enable_rate_limiting = enable_rate_limiting
        self._listeners: List[EventListener] = []
        self._started = False

    # events ------------------------------------------------------------

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, data)
            except Exception as exc:
                logger.warning("event_listener_failed", event_type=event_type, error=str(exc))

    # lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self.registry.register_tools(self.builtin_tools)
        self._load_dynamic_tools()
        await self.context_store.start()
        await self.permissions.start()
        self._started = True
        logger.info("orchestrator_started", tools=self.registry.size())

    def _load_dynamic_tools(self) -> int:
        if self.loader is None:
            return 0
        try:
            tools = self.loader.load_tools()
        except Exception as exc:
            # the store being unreachable leaves only the code-declared tools
            logger.error("dynamic_tool_load_failed", error=str(exc), error_type=type(exc).__name__)
            return 0
        self.registry.register_tools(tools)
        return len(tools)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.context_store.shutdown()
        await self.permissions.shutdown()
        self._started = False
        logger.info("orchestrator_stopped")

    @property
    def started(self) -> bool:
        return self._started

    # tools -------------------------------------------------------------

    def check_permission(self, tool_name: str, channel_type: str) -> bool:
        tool = self.registry.get(tool_name)
        if tool is None:
            return False
        try:
            self.permissions.check_permission(tool_name, channel_type, tool.permissions)
        except ServiceError:
            return False
        return True

    def get_tools_for_channel(self, channel_type: str) -> List[ToolDefinition]:
        return self.registry.get_tools_for_channel(channel_type)

    def register_tool(self, tool: ToolDefinition) -> None:
        self.registry.register(tool)

    def unregister_tool(self, name: str) -> bool:
        return self.registry.unregister(name)

    async def execute_tool(
        self,
        tool_name: str,
        parameters: Dict[str, Any],
        context: SessionContext,
    ) -> ToolExecution:
        """Run a tool with enforcement and record the outcome on the session.

        Failed executions are recorded with ``status="failed"`` before the
        error is re-raised.
        """
        tool = self.registry.get(tool_name)
        if tool is None:
            raise ToolNotFound(tool_name)

        if self.enable_permission_checks:
            self.permissions.check_permission(tool_name, context.channel_type, tool.permissions)
        if self.enable_rate_limiting:
            self.permissions.check_rate_limit(
                tool_name, context.user_id, context.channel_type, tool.permissions
            )

        execution = ToolExecution(
            id=str(uuid.uuid4()),
            tool_name=tool_name,
            parameters=parameters,
            status="running",
            executed_at=utcnow(),
        )
        started = time.monotonic()
        try:
            execution.result = await self.registry.execute_tool(tool_name, parameters, context)
        except ToolExecutionFailed as exc:
            execution.status = "failed"
            execution.error = exc.error
            execution.execution_time_ms = int((time.monotonic() - started) * 1000)
            await self._record_execution(context.session_id, execution)
            self._emit(
                "tool:failed",
                {"sessionId": context.session_id, "execution": execution.to_dict(), "error": exc.error},
            )
            raise

        execution.status = "success"
        execution.execution_time_ms = int((time.monotonic() - started) * 1000)
        await self._record_execution(context.session_id, execution)
        self._emit("tool:executed", {"sessionId": context.session_id, "execution": execution.to_dict()})
        return execution

    async def _record_execution(self, session_id: str, execution: ToolExecution) -> None:
        current = await self.context_store.get(session_id)
        if current is None:
            logger.warning(
                "tool_execution_not_recorded",
                session_id=session_id,
                tool=execution.tool_name,
                reason="context_missing",
            )
            return
        await self.update_context(
            session_id, {"tool_executions": [*current.tool_executions, execution]}
        )

    async def reload_tools(self) -> Dict[str, Any]:
        """Clear and repopulate the registry; reports failure instead of raising."""
        try:
            self.registry.clear()
            self.registry.register_tools(self.builtin_tools)
            if self.loader is not None:
                self.registry.register_tools(self.loader.load_tools())
        except Exception as exc:
            logger.error("tool_reload_failed", error=str(exc))
            return {"success": False, "toolCount": self.registry.size(), "error": str(exc)}
        count = self.registry.size()
        self._emit("tools:reloaded", {"toolCount": count})
        logger.info("tools_reloaded", tool_count=count)
        return {"success": True, "toolCount": count}

    # contexts ----------------------------------------------------------

    async def get_context(self, session_id: str) -> Optional[SessionContext]:
        return await self.context_store.get(session_id)

    async def create_context(
        self,
        session_id: str,
        conversation_id: str,
        channel_type: str,
        user_id: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> SessionContext:
        now = utcnow()
        context = SessionContext(
            session_id=session_id,
            conversation_id=conversation_id,
            channel_type=channel_type,
            user_id=user_id,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        await self.context_store.set(session_id, context, ttl_seconds)
        stored = await self.context_store.get(session_id)
        self._emit("context:created", {"sessionId": session_id, "conversationId": conversation_id})
        return stored or context

    async def update_context(self, session_id: str, partial: Dict[str, Any]) -> SessionContext:
        updated = await self.context_store.update(session_id, partial)
        self._emit("context:updated", {"sessionId": session_id, "fields": sorted(partial)})
        return updated

    async def delete_context(self, session_id: str) -> None:
        await self.context_store.delete(session_id)
        self._emit("context:deleted", {"sessionId": session_id})

    async def context_exists(self, session_id: str) -> bool:
        return await self.context_store.exists(session_id)

    async def set_context_expiry(self, session_id: str, ttl_seconds: int) -> None:
        await self.context_store.set_expiry(session_id, ttl_seconds)

    async def get_or_create_context(
        self,
        session_id: str,
        conversation_id: str,
        channel_type: str,
        user_id: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionContext:
        existing = await self.context_store.get(session_id)
        if existing is not None:
            return existing
        return await self.create_context(
            session_id, conversation_id, channel_type, user_id, metadata=metadata
        )

    # health ------------------------------------------------------------

    async def is_healthy(self) -> bool:
        return self._started and await self.context_store.is_healthy()

    async def get_stats(self) -> Dict[str, Any]:
        sessions = await self.context_store.get_all_sessions()
        return {
            "started": self._started,
            "tools": self.registry.size(),
            "toolNames": self.registry.get_names(),
            "activeSessions": len(sessions),
            "rateLimitEntries": self.permissions.size(),
            "permissionChecks": self.enable_permission_checks,
            "rateLimiting": self.enable_rate_limiting,
        }

