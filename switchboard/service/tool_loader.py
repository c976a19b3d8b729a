from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from switchboard.logging import get_logger
from switchboard.service.errors import ConfigIncomplete
from switchboard.service.permissions import ToolPermissions
from switchboard.service.sandbox import ExecutionEngine
from switchboard.service.tool_registry import (
    DEFAULT_PARAMETER_SCHEMA,
    ToolDefinition,
    ToolResult,
)
from switchboard.storage.models import SessionContext, ToolDefinitionRecord, ToolKind

logger = get_logger(__name__)

SQL_DEFAULT_PORTS = {"postgresql": 5432, "postgres": 5432, "mysql": 3306, "mssql": 1433, "oracle": 1521}


class ToolDefinitionSource(Protocol):
    def list_active_tool_definitions(self) -> List[ToolDefinitionRecord]:
        ...

    def get_tool_definition(self, name: str) -> Optional[ToolDefinitionRecord]:
        ...


def validate_parameters(schema: Optional[dict], parameters: Any) -> Optional[List[str]]:
    if not schema or not isinstance(schema, dict):
        return None
    try:
        validator = Draft202012Validator(schema)
    except SchemaError as exc:
        logger.warning("tool_schema_invalid", error=str(exc))
        return [f"invalid parameter schema: {exc.message}"]
    errors = sorted(validator.iter_errors(parameters), key=lambda e: list(e.path))
    if errors:
        return [e.message for e in errors]
    return None


class ConnectorClient:
    """Calls the email, SQL and REST connector services over HTTP."""

    def __init__(self, base_url: str, *, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def call(self, path: str, config: Dict[str, Any], params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(url, json={"config": config, "params": params})
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.is_error:
            error = payload.get("error") if isinstance(payload, dict) else None
            raise RuntimeError(error or f"HTTP {response.status_code}")
        return payload if isinstance(payload, dict) else {"data": payload}


class StoredToolHandler(ABC):
    """Base for handlers built from a stored tool definition."""

    kind: ToolKind

    def __init__(self, record: ToolDefinitionRecord) -> None:
        self.record = record

    async def invoke(
        self, parameters: Dict[str, Any], context: Optional[SessionContext]
    ) -> ToolResult:
        errors = validate_parameters(self.record.parameters, parameters)
        if errors:
            return {"success": False, "error": f"Invalid parameters: {'; '.join(errors)}"}
        return await self.run(parameters or {}, context)

    @abstractmethod
    async def run(
        self, parameters: Dict[str, Any], context: Optional[SessionContext]
    ) -> ToolResult:
        ...


class SandboxedCodeHandler(StoredToolHandler):
    kind = ToolKind.CODE

    def __init__(self, record: ToolDefinitionRecord, engine: ExecutionEngine) -> None:
        super().__init__(record)
        self.engine = engine

    async def run(self, parameters, context):
        if not (self.record.implementation or "").strip():
            return {
                "success": False,
                "message": (
                    f"Tool '{self.record.name}' has no implementation yet. "
                    "Add code to the tool definition to enable it."
                ),
            }
        return await self.engine.execute(
            self.record.implementation or "", parameters, context, tool_name=self.record.name
        )


class ConnectorToolHandler(StoredToolHandler):
    """Shared flow for connector tools: check params, check config, call service."""

    path: str

    def __init__(self, record: ToolDefinitionRecord, client: ConnectorClient) -> None:
        super().__init__(record)
        self.client = client

    @abstractmethod
    def build_request(self, parameters: Dict[str, Any]) -> tuple[Dict[str, Any], Dict[str, Any]]:
        """Return ``(config, params)``; raise ConfigIncomplete or ValueError."""

    @abstractmethod
    def build_result(self, parameters: Dict[str, Any], payload: Dict[str, Any]) -> ToolResult:
        ...

    async def run(self, parameters, context):
        try:
            config, params = self.build_request(parameters)
            payload = await self.client.call(self.path, config, params)
        except ConfigIncomplete as exc:
            logger.warning("connector_config_incomplete", tool=self.record.name, error=exc.message)
            return {"success": False, "error": exc.message}
        except (ValueError, RuntimeError, httpx.HTTPError) as exc:
            logger.error(
                "connector_tool_failed",
                tool=self.record.name,
                kind=self.kind.value,
                error=str(exc),
            )
            return {"success": False, "error": str(exc) or type(exc).__name__}
        return self.build_result(parameters, payload)


class EmailConnectorHandler(ConnectorToolHandler):
    kind = ToolKind.EMAIL
    path = "/api/services/email/send"

    def build_request(self, parameters):
        if not parameters.get("to") or not parameters.get("subject"):
            raise ValueError("Email to and subject are required")
        if not parameters.get("text") and not parameters.get("html"):
            raise ValueError("Email text or html content is required")
        smtp = (self.record.config or {}).get("smtp") or {}
        if not (smtp.get("host") and smtp.get("user") and smtp.get("password")):
            raise ConfigIncomplete(
                "SMTP configuration is incomplete. Please configure SMTP settings in the tool config."
            )
        config = {
            "host": smtp["host"],
            "port": smtp.get("port") or 587,
            "secure": bool(smtp.get("secure", False)),
            "user": smtp["user"],
            "password": smtp["password"],
            "fromAddress": smtp.get("fromAddress") or smtp["user"],
            "fromName": smtp.get("fromName"),
        }
        params = {
            key: parameters.get(key)
            for key in ("to", "subject", "text", "html", "cc", "bcc", "replyTo")
        }
        return config, params

    def build_result(self, parameters, payload):
        data = payload.get("data") or {}
        return {
            "success": True,
            "messageId": data.get("messageId"),
            "to": parameters.get("to"),
            "subject": parameters.get("subject"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class SqlConnectorHandler(ConnectorToolHandler):
    kind = ToolKind.SQL
    path = "/api/services/sql/execute"

    def build_request(self, parameters):
        if not parameters.get("query"):
            raise ValueError("SQL query parameter is required")
        database = (self.record.config or {}).get("database") or {}
        if not (
            database.get("type")
            and database.get("host")
            and database.get("user")
            and database.get("password")
        ):
            raise ConfigIncomplete(
                "Database configuration is incomplete. Please configure database connection settings in the tool config."
            )
        db_type = str(database["type"]).lower()
        config = {
            "type": db_type,
            "host": database["host"],
            "port": database.get("port") or SQL_DEFAULT_PORTS.get(db_type, 5432),
            "database": database.get("database") or database.get("databaseName"),
            "user": database["user"],
            "password": database["password"],
            "ssl": database.get("ssl"),
        }
        params = {"query": parameters["query"], "parameters": parameters.get("parameters") or []}
        return config, params

    def build_result(self, parameters, payload):
        data = payload.get("data") or {}
        return {
            "success": True,
            "rows": data.get("rows") or [],
            "rowCount": data.get("rowCount") or 0,
            "executionTime": data.get("executionTime"),
        }


class RestConnectorHandler(ConnectorToolHandler):
    kind = ToolKind.REST
    path = "/api/services/rest/call"

    def build_request(self, parameters):
        if not parameters.get("method") or not parameters.get("endpoint"):
            raise ValueError("HTTP method and endpoint are required")
        rest = (self.record.config or {}).get("rest") or {}
        if not rest.get("baseUrl"):
            raise ConfigIncomplete(
                "REST configuration is incomplete. Please configure base URL and authentication in the tool config."
            )
        config = {
            "baseUrl": rest["baseUrl"],
            "auth": rest.get("auth"),
            "defaultHeaders": rest.get("defaultHeaders") or {},
            "timeout": rest.get("timeout") or 30,
        }
        params = {
            "method": str(parameters["method"]).upper(),
            "endpoint": parameters["endpoint"],
            "headers": parameters.get("headers"),
            "queryParams": parameters.get("queryParams"),
            "body": parameters.get("body"),
            "bodyType": parameters.get("bodyType") or "json",
        }
        return config, params

    def build_result(self, parameters, payload):
        data = payload.get("data") or {}
        return {
            "success": True,
            "status": data.get("status"),
            "data": data.get("data"),
            "headers": data.get("headers") or {},
        }


class DynamicToolLoader:
    """Builds registry definitions from stored tool rows."""

    def __init__(
        self,
        source: ToolDefinitionSource,
        engine: ExecutionEngine,
        connectors: ConnectorClient,
    ) -> None:
        self.source = source
        self.engine = engine
        self.connectors = connectors

    def build_handler(self, record: ToolDefinitionRecord) -> StoredToolHandler:
        try:
            kind = ToolKind((record.tool_type or ToolKind.CODE.value).lower())
        except ValueError:
            logger.warning("unknown_tool_type", tool=record.name, tool_type=record.tool_type)
            kind = ToolKind.CODE
        if kind is ToolKind.EMAIL:
            return EmailConnectorHandler(record, self.connectors)
        if kind is ToolKind.SQL:
            return SqlConnectorHandler(record, self.connectors)
        if kind is ToolKind.REST:
            return RestConnectorHandler(record, self.connectors)
        return SandboxedCodeHandler(record, self.engine)

    def build_definition(self, record: ToolDefinitionRecord) -> ToolDefinition:
        handler = self.build_handler(record)
        permissions = (
            ToolPermissions.from_dict(record.permissions)
            if record.permissions
            else ToolPermissions.default()
        )
        return ToolDefinition(
            name=record.name,
            description=record.description or "",
            handler=handler,
            parameters=record.parameters or dict(DEFAULT_PARAMETER_SCHEMA),
            permissions=permissions,
            kind=handler.kind,
        )

    def load_tools(self) -> List[ToolDefinition]:
        """Load every active definition; the store's errors propagate to the caller."""
        records = self.source.list_active_tool_definitions()
        tools: List[ToolDefinition] = []
        for record in records:
            try:
                tools.append(self.build_definition(record))
            except (TypeError, ValueError) as exc:
                logger.error("tool_definition_invalid", tool=record.name, error=str(exc))
        logger.info("dynamic_tools_loaded", count=len(tools))
        return tools

    def load_tool(self, name: str) -> Optional[ToolDefinition]:
        record = self.source.get_tool_definition(name)
        if record is None or not record.active:
            return None
        return self.build_definition(record)
