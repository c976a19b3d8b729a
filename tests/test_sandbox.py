import multiprocessing
from unittest.mock import MagicMock, patch

import httpx
import pytest

from switchboard.service.sandbox import (
    EXECUTION_FAILED_MESSAGE,
    MISSING_HANDLER_MESSAGE,
    READ_ONLY_MESSAGE,
    AllowlistedFetcher,
    ExecutionEngine,
    ReadOnlyDatabase,
    SandboxError,
    ToolNetworkPolicy,
    build_tool_network_policy,
    is_read_only_statement,
    validate_implementation,
)
from switchboard.storage.models import SessionContext


@pytest.fixture
def engine():
    engine = ExecutionEngine(timeout_seconds=2.0)
    yield engine
    engine.shutdown(wait=False)


def _context():
    return SessionContext(
        session_id="webchat:u1",
        conversation_id="c1",
        channel_type="webchat",
        user_id="u1",
        metadata={"tier": "gold"},
    )


class TestExecutionEngine:
    async def test_handler_result_is_returned(self, engine):
        source = (
            "def handler(parameters, context):\n"
            "    return {'success': True, 'data': parameters['x'] * 2, 'user': context['user_id']}\n"
        )
        result = await engine.execute(source, {"x": 21}, _context(), tool_name="double")
        assert result == {"success": True, "data": 42, "user": "u1"}

    async def test_plain_return_value_is_wrapped(self, engine):
        result = await engine.execute("def handler(p, c):\n    return [1, 2]\n", {})
        assert result == {"success": True, "data": [1, 2]}

    async def test_async_handler_is_awaited(self, engine):
        source = "async def handler(p, c):\n    return {'success': True, 'data': 'async'}\n"
        result = await engine.execute(source, {})
        assert result["data"] == "async"

    async def test_missing_handler_fails_uniformly(self, engine):
        result = await engine.execute("x = 1\n", {})
        assert result["success"] is False
        assert result["error"] == MISSING_HANDLER_MESSAGE
        assert result["message"] == EXECUTION_FAILED_MESSAGE

    async def test_imports_are_rejected(self, engine):
        source = "import os\ndef handler(p, c):\n    return os.getcwd()\n"
        result = await engine.execute(source, {})
        assert result["success"] is False
        assert "Import" in result["error"]

    async def test_dunder_access_is_rejected(self, engine):
        source = "def handler(p, c):\n    return ().__class__.__bases__\n"
        result = await engine.execute(source, {})
        assert result["success"] is False
        assert "__class__" in result["error"] or "__bases__" in result["error"]

    async def test_raised_error_becomes_failure(self, engine):
        source = "def handler(p, c):\n    raise ValueError('bad input')\n"
        result = await engine.execute(source, {})
        assert result == {
            "success": False,
            "error": "bad input",
            "message": EXECUTION_FAILED_MESSAGE,
            "logs": [],
        }

    async def test_timeout_is_reported(self):
        engine = ExecutionEngine(timeout_seconds=0.1)
        try:
            source = "def handler(p, c):\n    utils.sleep(1000)\n    return 1\n"
            result = await engine.execute(source, {})
        finally:
            engine.shutdown(wait=False)
        assert result["success"] is False
        assert "timed out" in result["error"]

    async def test_parameters_are_copied_and_logs_collected(self, engine):
        params = {"items": [1]}
        source = (
            "def handler(parameters, context):\n"
            "    parameters['items'].append(2)\n"
            "    logger.info('appended', {'n': len(parameters['items'])})\n"
            "    return {'success': True}\n"
        )
        await engine.execute(source, params)
        assert params == {"items": [1]}

    async def test_context_is_read_only(self, engine):
        source = "def handler(p, context):\n    context['user_id'] = 'x'\n    return 1\n"
        result = await engine.execute(source, {}, _context())
        assert result["success"] is False

    async def test_queries_and_logs_cross_the_process_boundary(self):
        executor = MagicMock(return_value=[{"n": 1}])
        engine = ExecutionEngine(query_executor=executor, timeout_seconds=5.0)
        ok_source = (
            "def handler(p, c):\n"
            "    return {'success': True, 'data': db.query('SELECT n FROM t WHERE id = $1', [7])}\n"
        )
        failing_source = (
            "def handler(p, c):\n"
            "    logger.info('before')\n"
            "    db.query('DELETE FROM t')\n"
        )
        try:
            ok = await engine.execute(ok_source, {})
            failed = await engine.execute(failing_source, {})
        finally:
            engine.shutdown(wait=False)

        assert ok == {"success": True, "data": [{"n": 1}]}
        executor.assert_called_once_with("SELECT n FROM t WHERE id = $1", [7])
        assert failed["error"] == READ_ONLY_MESSAGE
        assert failed["logs"] == [{"level": "info", "message": "before", "data": None}]


class TestReadOnlyDatabase:
    @pytest.mark.parametrize(
        "sql",
        ["SELECT 1", "  -- note\nselect * from t", "WITH x AS (SELECT 1) SELECT * FROM x", "(SELECT 1);"],
    )
    def test_read_statements_allowed(self, sql):
        assert is_read_only_statement(sql)

    @pytest.mark.parametrize(
        "sql",
        ["DELETE FROM t", "update t set a=1", "SELECT 1; DROP TABLE t", "", "/* x */ INSERT INTO t VALUES (1)"],
    )
    def test_write_statements_rejected(self, sql):
        assert not is_read_only_statement(sql)

    def test_query_forwards_to_executor(self):
        executor = MagicMock(return_value=[{"n": 1}])
        db = ReadOnlyDatabase(executor)
        assert db.query("SELECT $1", (1,)) == [{"n": 1}]
        executor.assert_called_once_with("SELECT $1", [1])

    def test_query_without_executor_raises(self):
        with pytest.raises(SandboxError):
            ReadOnlyDatabase(None).query("SELECT 1")

    def test_mutation_raises(self):
        with pytest.raises(SandboxError):
            ReadOnlyDatabase(MagicMock()).query("DROP TABLE users")


class TestFetch:
    def test_empty_allowlist_permits_any_host(self):
        fetcher = AllowlistedFetcher(ToolNetworkPolicy())
        response = httpx.Response(200, json={"ok": 1}, request=httpx.Request("GET", "https://api.example.com"))
        with patch("switchboard.service.sandbox.httpx.request", return_value=response) as request:
            result = fetcher("https://api.example.com/items")
        assert result["status"] == 200
        assert result["body"] == {"ok": 1}
        assert request.call_args.kwargs["follow_redirects"] is False

    def test_host_outside_allowlist_is_refused(self):
        policy = build_tool_network_policy(allowlist=["*.example.com", "10.0.0.0/8"], proxy_url=None)
        fetcher = AllowlistedFetcher(policy)
        with patch("switchboard.service.sandbox.httpx.request") as request:
            with pytest.raises(SandboxError):
                fetcher("https://evil.test/")
            request.assert_not_called()

    def test_wildcard_and_cidr_entries_match(self):
        policy = build_tool_network_policy(allowlist=["*.example.com", "10.0.0.0/8"], proxy_url=None)
        fetcher = AllowlistedFetcher(policy)
        response = httpx.Response(204, request=httpx.Request("GET", "https://a.example.com"))
        with patch("switchboard.service.sandbox.httpx.request", return_value=response):
            assert fetcher("https://a.example.com/x")["status"] == 204
            assert fetcher("http://10.1.2.3/x")["status"] == 204

    def test_transport_errors_become_sandbox_errors(self):
        fetcher = AllowlistedFetcher(ToolNetworkPolicy())
        with patch(
            "switchboard.service.sandbox.httpx.request",
            side_effect=httpx.ConnectError("refused"),
        ):
            with pytest.raises(SandboxError):
                fetcher("https://api.example.com")


def test_validate_implementation_checks_syntax_only():
    assert validate_implementation("def handler(p, c):\n    return 1\n") == {"valid": True, "error": None}
    result = validate_implementation("def handler(:\n")
    assert result["valid"] is False
    assert "line 1" in result["error"]


class TestSandboxEscapes:
    FRAME_WALK = (
        "def handler(p, c):\n"
        "    holder = []\n"
        "    def gen():\n"
        "        yield holder[0].gi_frame.f_back.f_back.f_globals\n"
        "    g = gen()\n"
        "    holder.append(g)\n"
        "    for glb in g:\n"
        "        break\n"
        "    return len(glb)\n"
    )

    async def test_generator_frame_walk_is_rejected(self, engine):
        result = await engine.execute(self.FRAME_WALK, {})
        assert result["success"] is False
        assert "gi_frame" in result["error"]

    @pytest.mark.parametrize(
        "expression",
        [
            "err.__traceback__",
            "err.with_traceback(None).tb_frame",
            "c.f_globals",
            "handler.co_consts",
            "p._private",
            "'{0.__class__}'.format(1)",
            "'{}'.format(1)",
            "c['__builtins__']",
        ],
    )
    def test_introspection_is_rejected_before_execution(self, engine, expression):
        with pytest.raises(SandboxError):
            engine.compile(f"def handler(p, c):\n    err = ValueError()\n    return {expression}\n")

    def test_ordinary_attributes_still_compile(self, engine):
        engine.compile("def handler(p, c):\n    return utils.format_date(None) + str(p.get('x'))\n")


class TestRunawayTools:
    async def test_runaway_tool_is_terminated_and_later_tools_still_run(self):
        engine = ExecutionEngine(timeout_seconds=0.5, workers=1)
        try:
            stuck = await engine.execute("def handler(p, c):\n    while True:\n        pass\n", {}, tool_name="spin")
            after = await engine.execute("def handler(p, c):\n    return 1\n", {}, tool_name="after")
        finally:
            engine.shutdown(wait=False)

        assert stuck["success"] is False
        assert "timed out" in stuck["error"]
        assert after == {"success": True, "data": 1}
        assert not [child for child in multiprocessing.active_children() if child.name.startswith("tool-")]
