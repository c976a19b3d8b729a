"""Constrained execution of stored tool implementations.

Tool source is Python that defines ``handler(parameters, context)``. Before
it runs, the syntax tree is checked against a small denylist (imports,
scope escapes, dunder access) and the code executes with a reduced builtin
table plus an explicit capability set:

- ``parameters``: a copy of the call arguments
- ``context``: a frozen view of the session context
- ``logger``: append-only, forwarded to structlog
- ``db.query``: read-only statements only
- ``fetch``: outbound HTTP through an allowlisted httpx client
- ``utils``: sleep, date and JSON helpers

Execution happens in a separate process that is terminated when it exceeds
its wall-clock timeout.
Every failure is reported as ``{"success": False, "error", "message"}``.
"""
from __future__ import annotations

import ast
import asyncio
import concurrent.futures
import inspect
import ipaddress
import json
import multiprocessing
import pickle
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType, SimpleNamespace
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from switchboard.logging import get_logger
from switchboard.storage.models import SessionContext

logger = get_logger(__name__)

EXECUTION_FAILED_MESSAGE = "Tool execution failed. Please check the implementation."
MISSING_HANDLER_MESSAGE = "Tool implementation must define a handler function"
READ_ONLY_MESSAGE = "Only SELECT queries are allowed in tool implementations"

_READ_ONLY_KEYWORDS = ("select", "with", "show", "explain", "describe")
_LEADING_SQL_NOISE = re.compile(r"^(\s+|--[^\n]*\n|/\*.*?\*/|\()+", re.DOTALL)
_MAX_SLEEP_SECONDS = 5.0


class SandboxError(Exception):
    """Raised when sandbox constraints are violated."""


_SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "range": range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "Exception": Exception,
    "ValueError": ValueError,
    "KeyError": KeyError,
    "TypeError": TypeError,
}

_DISALLOWED_NODES = (ast.Import, ast.ImportFrom, ast.Global, ast.Nonlocal, ast.ClassDef)

# frame, code and traceback introspection reaches interpreter globals
_INTROSPECTION_PREFIXES = ("gi_", "cr_", "ag_", "tb_", "f_", "co_")
_BLOCKED_ATTRIBUTES = frozenset({"format", "format_map", "mro"})
_DUNDER_RE = re.compile(r"__\w+__")


def _blocked_attribute(attr: str) -> bool:
    return (
        attr.startswith("_")
        or attr.startswith(_INTROSPECTION_PREFIXES)
        or attr in _BLOCKED_ATTRIBUTES
    )


def check_source(tree: ast.AST) -> None:
    """Reject constructs that reach outside the capability table."""
    for node in ast.walk(tree):
        if isinstance(node, _DISALLOWED_NODES):
            raise SandboxError(f"{type(node).__name__} is not allowed in tool implementations")
        if isinstance(node, ast.Attribute) and _blocked_attribute(node.attr):
            raise SandboxError(f"access to '{node.attr}' is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise SandboxError(f"access to '{node.id}' is not allowed")
        if isinstance(node, ast.Constant) and isinstance(node.value, str) and _DUNDER_RE.search(node.value):
            raise SandboxError("strings naming dunder attributes are not allowed")


def validate_implementation(source: str) -> Dict[str, Any]:
    """Syntax-only check used for admin feedback; nothing is executed."""
    try:
        ast.parse(source or "", mode="exec")
    except SyntaxError as exc:
        return {"valid": False, "error": f"{exc.msg} (line {exc.lineno})"}
    return {"valid": True, "error": None}


# Capabilities ----------------------------------------------------------------


@dataclass
class ToolNetworkPolicy:
    """Egress policy for ``fetch``.

    Attributes:
        allowlist: Allowed target host patterns (hostname, wildcard, or CIDR).
            Empty permits any host.
        proxy_url: Optional HTTP proxy all tool fetches must use
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
    """

    allowlist: list[str] = field(default_factory=list)
    proxy_url: Optional[str] = None
    connect_timeout: float = 5.0
    total_timeout: float = 10.0


def build_tool_network_policy(
    *,
    allowlist: Sequence[str] | None,
    proxy_url: Optional[str],
    connect_timeout: float = 5.0,
    total_timeout: float = 10.0,
) -> ToolNetworkPolicy:
    return ToolNetworkPolicy(
        allowlist=[entry.strip().lower() for entry in allowlist or [] if entry.strip()],
        proxy_url=proxy_url,
        connect_timeout=connect_timeout,
        total_timeout=total_timeout,
    )


def _host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    lowered = host.lower()
    for entry in allowlist:
        if entry.startswith("*."):
            if lowered.endswith(entry[1:]):
                return True
        elif lowered == entry:
            return True
        elif "/" in entry:
            try:
                if ipaddress.ip_address(host) in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                continue
    return False


class AllowlistedFetcher:
    """The ``fetch`` capability: bounded httpx requests returning plain dicts."""

    def __init__(self, policy: ToolNetworkPolicy):
        self.policy = policy

    def __call__(
        self,
        url: str,
        method: str = "GET",
        *,
        headers: Optional[dict] = None,
        json: Any = None,
        data: Any = None,
        params: Optional[dict] = None,
    ) -> Dict[str, Any]:
        host = urlparse(url).hostname
        if not host:
            raise SandboxError("URL is missing host for tool fetch")
        if self.policy.allowlist and not _host_matches_allowlist(host, self.policy.allowlist):
            raise SandboxError(f"Target host '{host}' is not allowlisted for tool fetch")

        timeout = httpx.Timeout(self.policy.total_timeout, connect=self.policy.connect_timeout)
        try:
            response = httpx.request(
                method.upper(),
                url,
                headers=headers,
                json=json,
                data=data,
                params=params,
                timeout=timeout,
                proxy=self.policy.proxy_url,
                follow_redirects=False,
            )
        except httpx.TimeoutException as exc:
            raise SandboxError("tool fetch timed out") from exc
        except httpx.HTTPError as exc:
            raise SandboxError(f"tool fetch failed: {exc}") from exc

        body: Any = response.text
        if "json" in response.headers.get("content-type", ""):
            try:
                body = response.json()
            except ValueError:
                pass
        return {
            "status": response.status_code,
            "ok": response.is_success,
            "headers": dict(response.headers),
            "body": body,
        }


def is_read_only_statement(sql: str) -> bool:
    stripped = _LEADING_SQL_NOISE.sub("", sql or "")
    first = stripped.split(None, 1)[0].lower() if stripped.strip() else ""
    if first not in _READ_ONLY_KEYWORDS:
        return False
    # a second statement after a terminator could be anything
    body = stripped.rstrip().rstrip(";")
    return ";" not in body


class ReadOnlyDatabase:
    """The ``db`` capability. Statements are screened before the executor sees them."""

    def __init__(self, executor: Optional[Callable[[str, Sequence[Any]], List[dict]]]):
        self._executor = executor

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[dict]:
        if not is_read_only_statement(sql):
            raise SandboxError(READ_ONLY_MESSAGE)
        if self._executor is None:
            raise SandboxError("database access is not available for tools")
        return self._executor(sql, list(params or []))


class ToolLogger:
    """Append-only log collected during one execution."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        self.entries: List[Dict[str, Any]] = []

    def _append(self, level: str, message: Any, data: Any = None) -> None:
        self.entries.append({"level": level, "message": str(message), "data": data})
        log_fn = {"info": logger.info, "warn": logger.warning, "error": logger.error}[level]
        log_fn("tool_log", tool=self.tool_name, tool_message=str(message), data=data)

    def info(self, message: Any, data: Any = None) -> None:
        self._append("info", message, data)

    def warn(self, message: Any, data: Any = None) -> None:
        self._append("warn", message, data)

    def error(self, message: Any, data: Any = None) -> None:
        self._append("error", message, data)


def _format_date(value: Any = None, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    if value is None:
        moment = datetime.now(timezone.utc)
    elif isinstance(value, (int, float)):
        # epoch milliseconds, as produced by providers
        moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, datetime):
        moment = value
    else:
        moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return moment.strftime(fmt)


def _sleep(milliseconds: float) -> None:
    time.sleep(min(max(float(milliseconds), 0.0) / 1000, _MAX_SLEEP_SECONDS))


def build_utils() -> SimpleNamespace:
    return SimpleNamespace(
        sleep=_sleep,
        format_date=_format_date,
        parse_json=json.loads,
        stringify_json=lambda value, indent=None: json.dumps(value, indent=indent, default=str),
    )


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


# Engine ----------------------------------------------------------------------
#
# Each execution runs in its own spawned process so a runaway tool can be
# terminated. The parent answers log and query messages over a pipe until the
# child sends its result.

_PROCESS_START_TIMEOUT_SECONDS = 30.0
_PROCESS_STOP_GRACE_SECONDS = 1.0
_SERIALIZATION_ERRORS = (pickle.PicklingError, TypeError, AttributeError)
_spawn = multiprocessing.get_context("spawn")


class ToolTimeout(SandboxError):
    """The tool exceeded its wall-clock budget and its process was terminated."""


def compile_tool_source(source: str, tool_name: str = "<tool>"):
    if not source or not source.strip():
        raise SandboxError(MISSING_HANDLER_MESSAGE)
    tree = ast.parse(source, filename=tool_name, mode="exec")
    check_source(tree)
    return compile(tree, filename=tool_name, mode="exec")


class _RemoteQuery:
    """``db`` executor inside the tool process; the parent runs the statement."""

    def __init__(self, conn) -> None:
        self.conn = conn

    def __call__(self, sql: str, params: Sequence[Any]) -> List[dict]:
        self.conn.send(("query", sql, list(params)))
        kind, payload = self.conn.recv()
        if kind == "error":
            raise SandboxError(payload)
        return payload


class _RemoteToolLogger(ToolLogger):
    """``logger`` inside the tool process; entries are collected by the parent."""

    def __init__(self, tool_name: str, conn) -> None:
        super().__init__(tool_name)
        self.conn = conn

    def _append(self, level: str, message: Any, data: Any = None) -> None:
        try:
            self.conn.send(("log", level, str(message), data))
        except _SERIALIZATION_ERRORS:
            self.conn.send(("log", level, str(message), repr(data)))


def _invoke_handler(code, namespace: Dict[str, Any]) -> Any:
    exec(code, namespace)
    handler = namespace.get("handler")
    if not callable(handler):
        raise SandboxError(MISSING_HANDLER_MESSAGE)
    result = handler(namespace["parameters"], namespace["context"])
    if inspect.iscoroutine(result):
        result = asyncio.run(result)
    return result


def _tool_process_main(conn, request: Dict[str, Any]) -> None:
    """Entry point of the tool process."""
    try:
        code = compile_tool_source(request["source"], request["tool_name"])
        namespace: Dict[str, Any] = {
            "__builtins__": dict(_SAFE_BUILTINS),
            "parameters": request["parameters"],
            "context": _freeze(request["context"] or {}),
            "logger": _RemoteToolLogger(request["tool_name"], conn),
            "db": ReadOnlyDatabase(_RemoteQuery(conn) if request["db_available"] else None),
            "fetch": AllowlistedFetcher(request["network_policy"]),
            "utils": build_utils(),
        }
        conn.send(("ready",))
        reply: tuple = ("result", _invoke_handler(code, namespace))
    except Exception as exc:
        reply = ("error", type(exc).__name__, str(exc) or type(exc).__name__)
    try:
        conn.send(reply)
    except _SERIALIZATION_ERRORS as exc:
        conn.send(("error", "TypeError", f"tool result is not serializable: {exc}"))
    finally:
        conn.close()


def _stop_process(process, grace: float) -> None:
    process.join(grace)
    if process.is_alive():
        process.terminate()
        process.join(_PROCESS_STOP_GRACE_SECONDS)
    if process.is_alive():
        process.kill()
        process.join()


class ExecutionEngine:
    """Runs stored tool source with a fixed capability table and a timeout."""

    MAX_WORKERS = 16

    def __init__(
        self,
        *,
        network_policy: Optional[ToolNetworkPolicy] = None,
        query_executor: Optional[Callable[[str, Sequence[Any]], List[dict]]] = None,
        timeout_seconds: float = 10.0,
        workers: int = 4,
    ) -> None:
        self.network_policy = network_policy or ToolNetworkPolicy()
        self.query_executor = query_executor
        self.db = ReadOnlyDatabase(query_executor)
        self.timeout_seconds = timeout_seconds
        # supervisor threads; each returns once its tool process is gone
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(max(1, workers), self.MAX_WORKERS),
            thread_name_prefix="tool-sandbox",
        )
        self._executor_shutdown = False

    def compile(self, source: str, tool_name: str = "<tool>"):
        return compile_tool_source(source, tool_name)

    def _answer_query(self, sql: str, params: Sequence[Any]) -> tuple:
        try:
            return ("rows", self.db.query(sql, params))
        except Exception as exc:
            logger.warning("tool_query_failed", error=str(exc))
            return ("error", str(exc))

    def _supervise(self, request: Dict[str, Any], tool_logger: ToolLogger) -> Any:
        parent_conn, child_conn = _spawn.Pipe(duplex=True)
        process = _spawn.Process(
            target=_tool_process_main,
            args=(child_conn, request),
            name=f"tool-{request['tool_name']}",
            daemon=True,
        )
        process.start()
        child_conn.close()
        finished = False
        try:
            started = False
            deadline = time.monotonic() + _PROCESS_START_TIMEOUT_SECONDS
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not parent_conn.poll(remaining):
                    if not started:
                        raise SandboxError("tool process did not start")
                    raise ToolTimeout(f"Tool execution timed out after {self.timeout_seconds:g}s")
                try:
                    message = parent_conn.recv()
                except EOFError as exc:
                    raise SandboxError("tool process exited unexpectedly") from exc
                kind = message[0]
                if kind == "ready":
                    started = True
                    deadline = time.monotonic() + self.timeout_seconds
                elif kind == "log":
                    tool_logger._append(*message[1:])
                elif kind == "query":
                    parent_conn.send(self._answer_query(message[1], message[2]))
                elif kind == "result":
                    finished = True
                    return message[1]
                else:
                    finished = True
                    raise SandboxError(message[2])
        finally:
            _stop_process(process, _PROCESS_STOP_GRACE_SECONDS if finished else 0)
            parent_conn.close()

    async def execute(
        self,
        source: str,
        parameters: Dict[str, Any],
        context: Optional[SessionContext] = None,
        *,
        tool_name: str = "<tool>",
    ) -> Dict[str, Any]:
        started = time.monotonic()
        tool_logger = ToolLogger(tool_name)
        try:
            self.compile(source, tool_name)
            request = {
                "source": source,
                "tool_name": tool_name,
                "parameters": parameters or {},
                "context": context.to_dict() if context is not None else None,
                "network_policy": self.network_policy,
                "db_available": self.query_executor is not None,
            }
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._executor, self._supervise, request, tool_logger)
        except ToolTimeout as exc:
            logger.warning("tool_timeout", tool=tool_name, timeout=self.timeout_seconds)
            return {
                "success": False,
                "error": str(exc),
                "message": EXECUTION_FAILED_MESSAGE,
                "logs": tool_logger.entries,
            }
        except Exception as exc:
            logger.warning(
                "tool_execution_error",
                tool=tool_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return {
                "success": False,
                "error": str(exc) or type(exc).__name__,
                "message": EXECUTION_FAILED_MESSAGE,
                "logs": tool_logger.entries,
            }

        logger.debug(
            "tool_executed",
            tool=tool_name,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if isinstance(result, dict):
            return result
        return {"success": True, "data": result}

    def shutdown(self, wait: bool = True) -> None:
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("sandbox_executor_shutdown", wait=wait)
