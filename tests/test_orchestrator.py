from unittest.mock import MagicMock

import pytest

from switchboard.service.builtin_tools import builtin_tools
from switchboard.service.errors import (
    PermissionDenied,
    RateLimitExceeded,
    ToolExecutionFailed,
    ToolNotFound,
)
from switchboard.service.orchestrator import ToolOrchestrator
from switchboard.service.permissions import PermissionManager, RateLimit, ToolPermissions
from switchboard.service.tool_registry import FunctionToolHandler, ToolDefinition, ToolRegistry
from switchboard.storage.context_store import MemoryContextStore


def _tool(name, func, **kwargs):
    return ToolDefinition(name=name, description=name, handler=FunctionToolHandler(func), **kwargs)


def _orchestrator(loader=None, **kwargs):
    return ToolOrchestrator(
        MemoryContextStore(),
        ToolRegistry(),
        PermissionManager(),
        loader,
        builtin_tools=builtin_tools(),
        **kwargs,
    )


class TestToolRegistry:
    async def test_plain_return_is_wrapped(self):
        registry = ToolRegistry()
        registry.register(_tool("echo", lambda p, c: p["value"]))
        assert await registry.execute_tool("echo", {"value": 3}) == {"success": True, "data": 3}

    async def test_failure_result_raises_uniformly(self):
        registry = ToolRegistry()
        registry.register(_tool("nope", lambda p, c: {"success": False, "message": "not today"}))
        with pytest.raises(ToolExecutionFailed) as excinfo:
            await registry.execute_tool("nope", {"a": 1})
        assert excinfo.value.error == "not today"
        assert excinfo.value.detail["toolResult"] == {"success": False, "message": "not today"}

    async def test_raised_exception_raises_uniformly(self):
        def boom(p, c):
            raise KeyError("missing")

        registry = ToolRegistry()
        registry.register(_tool("boom", boom))
        with pytest.raises(ToolExecutionFailed) as excinfo:
            await registry.execute_tool("boom", {})
        assert excinfo.value.detail["toolName"] == "boom"

    async def test_unknown_tool(self):
        with pytest.raises(ToolNotFound):
            await ToolRegistry().execute_tool("ghost", {})

    def test_channel_filter(self):
        registry = ToolRegistry()
        registry.register(_tool("any", lambda p, c: 1))
        registry.register(_tool("wa", lambda p, c: 1, permissions=ToolPermissions(channels=["whatsapp"])))
        assert [t.name for t in registry.get_tools_for_channel("email")] == ["any"]
        assert {t.name for t in registry.get_tools_for_channel("whatsapp")} == {"any", "wa"}


class TestToolOrchestrator:
    async def test_start_registers_builtins_and_dynamic_tools(self):
        loader = MagicMock()
        loader.load_tools.return_value = [_tool("dynamic", lambda p, c: 1)]
        orchestrator = _orchestrator(loader)
        await orchestrator.start()
        try:
            names = set(orchestrator.registry.get_names())
            assert {"get_current_time", "get_conversation_context", "dynamic"} <= names
            assert await orchestrator.is_healthy()
        finally:
            await orchestrator.stop()

    async def test_failed_dynamic_load_keeps_builtins(self):
        loader = MagicMock()
        loader.load_tools.side_effect = RuntimeError("db down")
        orchestrator = _orchestrator(loader)
        await orchestrator.start()
        try:
            assert set(orchestrator.registry.get_names()) == {"get_current_time", "get_conversation_context"}
        finally:
            await orchestrator.stop()

    async def test_execution_is_recorded_on_context(self):
        orchestrator = _orchestrator()
        orchestrator.register_tool(_tool("echo", lambda p, c: {"success": True, "echo": p}))
        events = []
        orchestrator.add_listener(lambda kind, data: events.append(kind))
        context = await orchestrator.create_context("webchat:u1", "c1", "webchat", "u1")

        execution = await orchestrator.execute_tool("echo", {"x": 1}, context)

        stored = await orchestrator.get_context("webchat:u1")
        assert execution.status == "success"
        assert stored.tool_executions[-1].id == execution.id
        assert stored.tool_executions[-1].result == {"success": True, "echo": {"x": 1}}
        assert events == ["context:created", "context:updated", "tool:executed"]

    async def test_failed_execution_is_recorded_then_raised(self):
        orchestrator = _orchestrator()
        orchestrator.register_tool(_tool("nope", lambda p, c: {"success": False, "error": "no stock"}))
        context = await orchestrator.create_context("webchat:u1", "c1", "webchat", "u1")

        with pytest.raises(ToolExecutionFailed):
            await orchestrator.execute_tool("nope", {}, context)

        stored = await orchestrator.get_context("webchat:u1")
        assert stored.tool_executions[-1].status == "failed"
        assert stored.tool_executions[-1].error == "no stock"

    async def test_permission_and_rate_limit_enforced(self):
        orchestrator = _orchestrator()
        orchestrator.register_tool(
            _tool(
                "limited",
                lambda p, c: 1,
                permissions=ToolPermissions(
                    channels=["whatsapp"], rate_limit=RateLimit(requests=1, window_seconds=60)
                ),
            )
        )
        webchat = await orchestrator.create_context("webchat:u1", "c1", "webchat", "u1")
        with pytest.raises(PermissionDenied):
            await orchestrator.execute_tool("limited", {}, webchat)

        whatsapp = await orchestrator.create_context("whatsapp:u1", "c2", "whatsapp", "u1")
        await orchestrator.execute_tool("limited", {}, whatsapp)
        with pytest.raises(RateLimitExceeded):
            await orchestrator.execute_tool("limited", {}, whatsapp)
        assert orchestrator.check_permission("limited", "whatsapp")
        assert not orchestrator.check_permission("limited", "email")

    async def test_enforcement_can_be_disabled(self):
        orchestrator = _orchestrator(enable_permission_checks=False, enable_rate_limiting=False)
        orchestrator.register_tool(
            _tool(
                "limited",
                lambda p, c: 1,
                permissions=ToolPermissions(channels=["whatsapp"], rate_limit=RateLimit(1, 60)),
            )
        )
        context = await orchestrator.create_context("email:u1", "c1", "email", "u1")
        await orchestrator.execute_tool("limited", {}, context)
        await orchestrator.execute_tool("limited", {}, context)

    async def test_reload_replaces_registry(self):
        loader = MagicMock()
        loader.load_tools.return_value = [_tool("v2", lambda p, c: 1)]
        orchestrator = _orchestrator(loader)
        orchestrator.register_tool(_tool("stale", lambda p, c: 1))

        result = await orchestrator.reload_tools()

        assert result == {"success": True, "toolCount": 3}
        assert not orchestrator.registry.has("stale")

    async def test_reload_failure_is_reported(self):
        loader = MagicMock()
        loader.load_tools.side_effect = RuntimeError("db down")
        result = await _orchestrator(loader).reload_tools()
        assert result["success"] is False
        assert result["error"] == "db down"

    async def test_get_or_create_context_is_idempotent(self):
        orchestrator = _orchestrator()
        first = await orchestrator.get_or_create_context("s", "c1", "webchat", "u1", metadata={"a": 1})
        second = await orchestrator.get_or_create_context("s", "c2", "webchat", "u1")
        assert second.conversation_id == first.conversation_id == "c1"
        await orchestrator.delete_context("s")
        assert not await orchestrator.context_exists("s")


class TestBuiltinTools:
    async def test_current_time_rejects_unknown_zone(self):
        registry = ToolRegistry()
        registry.register_tools(builtin_tools())
        result = await registry.execute_tool("get_current_time", {"timezone": "Europe/Berlin"})
        assert result["timezone"] == "Europe/Berlin"
        with pytest.raises(ToolExecutionFailed):
            await registry.execute_tool("get_current_time", {"timezone": "Mars/Olympus"})
