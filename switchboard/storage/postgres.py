from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from switchboard.logging import get_logger
from switchboard.storage.errors import ConstraintViolation
from switchboard.storage.models import (
    ChannelConfig,
    Conversation,
    Flow,
    KnowledgeChunk,
    Message,
    RoutingResult,
    ToolDefinitionRecord,
    ToolExecutionRecord,
    utcnow,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channel_configs (
    id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    channel_type TEXT NOT NULL,
    config JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_active BOOLEAN NOT NULL DEFAULT true,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS llm_configs (
    id UUID PRIMARY KEY,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    config JSONB NOT NULL DEFAULT '{}'::jsonb,
    active BOOLEAN NOT NULL DEFAULT true
);
CREATE TABLE IF NOT EXISTS orchestration_flows (
    id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    llm_id UUID REFERENCES llm_configs(id),
    flow_config JSONB NOT NULL DEFAULT '{}'::jsonb,
    enabled_tools JSONB NOT NULL DEFAULT '[]'::jsonb,
    routing_conditions JSONB NOT NULL DEFAULT '{}'::jsonb,
    priority INTEGER NOT NULL DEFAULT 100,
    active BOOLEAN NOT NULL DEFAULT true
);
CREATE TABLE IF NOT EXISTS flow_channels (
    flow_id UUID NOT NULL REFERENCES orchestration_flows(id) ON DELETE CASCADE,
    channel_id UUID NOT NULL REFERENCES channel_configs(id) ON DELETE CASCADE,
    priority INTEGER NOT NULL DEFAULT 100,
    active BOOLEAN NOT NULL DEFAULT true,
    PRIMARY KEY (flow_id, channel_id)
);
CREATE TABLE IF NOT EXISTS conversations (
    id UUID PRIMARY KEY,
    channel TEXT NOT NULL,
    channel_user_id TEXT NOT NULL,
    flow_id UUID REFERENCES orchestration_flows(id),
    status TEXT NOT NULL DEFAULT 'active',
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_activity TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS conversations_channel_user_flow_uniq
    ON conversations (channel, channel_user_id, flow_id) WHERE flow_id IS NOT NULL;
CREATE TABLE IF NOT EXISTS messages (
    id UUID PRIMARY KEY,
    conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
    llm_provider TEXT,
    llm_model TEXT,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    cost NUMERIC NOT NULL DEFAULT 0,
    idempotency_key TEXT,
    source_namespace TEXT,
    case_id TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS messages_idempotency_uniq
    ON messages (conversation_id, idempotency_key) WHERE idempotency_key IS NOT NULL;
CREATE INDEX IF NOT EXISTS messages_provider_id_idx
    ON messages ((metadata->'originalMessage'->>'id'));
CREATE TABLE IF NOT EXISTS tool_executions (
    id UUID PRIMARY KEY,
    conversation_id UUID REFERENCES conversations(id) ON DELETE CASCADE,
    message_id UUID,
    tool_name TEXT NOT NULL,
    parameters JSONB NOT NULL DEFAULT '{}'::jsonb,
    result JSONB,
    status TEXT NOT NULL,
    execution_time_ms INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    executed_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS analytics_events (
    id UUID PRIMARY KEY,
    event_type TEXT NOT NULL,
    conversation_id UUID,
    channel_type TEXT,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS system_logs (
    id BIGSERIAL PRIMARY KEY,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    service TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    user_id TEXT,
    conversation_id UUID,
    stack_trace TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS tool_definitions (
    id UUID PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    parameters JSONB,
    permissions JSONB,
    implementation TEXT,
    tool_type TEXT NOT NULL DEFAULT 'code',
    config JSONB NOT NULL DEFAULT '{}'::jsonb,
    active BOOLEAN NOT NULL DEFAULT true,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS knowledge_chunks (
    id UUID PRIMARY KEY,
    flow_id UUID NOT NULL REFERENCES orchestration_flows(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    source TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb
);
"""

REQUIRED_TABLES = (
    "channel_configs",
    "llm_configs",
    "orchestration_flows",
    "flow_channels",
    "conversations",
    "messages",
    "tool_executions",
    "analytics_events",
    "system_logs",
    "tool_definitions",
    "knowledge_chunks",
)

_FLOW_ROUTING_SELECT = """
SELECT DISTINCT
    f.*,
    l.provider AS llm_provider,
    l.model AS llm_model,
    l.config AS llm_config,
    c.config AS channel_config,
    c.id AS channel_config_id,
    fc.priority AS channel_priority
FROM orchestration_flows f
JOIN llm_configs l ON f.llm_id = l.id
JOIN flow_channels fc ON f.id = fc.flow_id AND fc.active = true
JOIN channel_configs c ON fc.channel_id = c.id
"""


def _json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value


class PostgresStore:
    """Postgres-backed implementation of the persistence contract."""

    def __init__(self, dsn: str, *, verify_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self.check_schema()

    def _connect(self):
        return self.pool.connection()

    def apply_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def check_schema(self) -> None:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [table for table in REQUIRED_TABLES if table not in present]
        if missing:
            raise RuntimeError(f"database schema missing tables: {', '.join(missing)}")

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping ---------------------------------------------------------

    @staticmethod
    def _conversation(row: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            channel=row["channel"],
            channel_user_id=row["channel_user_id"],
            flow_id=str(row["flow_id"]) if row.get("flow_id") else None,
            status=row.get("status") or "active",
            metadata=_json(row.get("metadata"), {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_activity=row["last_activity"],
        )

    @staticmethod
    def _message(row: Dict[str, Any]) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            metadata=_json(row.get("metadata"), {}),
            timestamp=row["timestamp"],
            llm_provider=row.get("llm_provider"),
            llm_model=row.get("llm_model"),
            tokens_used=int(row.get("tokens_used") or 0),
            cost=float(row.get("cost") or 0),
            idempotency_key=row.get("idempotency_key"),
            source_namespace=row.get("source_namespace"),
            case_id=row.get("case_id"),
        )

    @staticmethod
    def _channel(row: Dict[str, Any]) -> ChannelConfig:
        return ChannelConfig(
            id=str(row["id"]),
            name=row.get("name") or "",
            channel_type=row["channel_type"],
            config=_json(row.get("config"), {}),
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _routing(row: Dict[str, Any]) -> RoutingResult:
        flow = Flow(
            id=str(row["id"]),
            name=row["name"],
            llm_id=str(row["llm_id"]) if row.get("llm_id") else None,
            flow_config=_json(row.get("flow_config"), {}) or {},
            enabled_tools=list(_json(row.get("enabled_tools"), []) or []),
            routing_conditions=_json(row.get("routing_conditions"), {}) or {},
            priority=int(row.get("priority") or 0),
            active=bool(row.get("active", True)),
        )
        return RoutingResult(
            flow=flow,
            llm_provider=row.get("llm_provider"),
            llm_model=row.get("llm_model"),
            llm_config=_json(row.get("llm_config"), {}) or {},
            enabled_tools=list(flow.enabled_tools),
            channel_config=_json(row.get("channel_config"), {}),
            channel_config_id=str(row["channel_config_id"]) if row.get("channel_config_id") else None,
        )

    @staticmethod
    def _tool_definition(row: Dict[str, Any]) -> ToolDefinitionRecord:
        return ToolDefinitionRecord(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description") or "",
            parameters=_json(row.get("parameters"), None),
            permissions=_json(row.get("permissions"), None),
            implementation=row.get("implementation"),
            tool_type=row.get("tool_type") or "code",
            config=_json(row.get("config"), {}) or {},
            active=bool(row.get("active", True)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # channels ------------------------------------------------------------

    def list_channel_configs(self, channel_type: str, *, active_only: bool = True) -> List[ChannelConfig]:
        query = "SELECT * FROM channel_configs WHERE channel_type = %s"
        if active_only:
            query += " AND is_active = true"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", (channel_type,)).fetchall()
        return [self._channel(row) for row in rows]

    def get_channel_config(self, channel_id: str) -> Optional[ChannelConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM channel_configs WHERE id = %s", (channel_id,)
            ).fetchone()
        return self._channel(row) if row else None

    # conversations -------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = %s", (conversation_id,)
            ).fetchone()
        return self._conversation(row) if row else None

    def find_latest_conversation(
        self,
        channel: str,
        channel_user_id: str,
        *,
        flow_id: Optional[str] = None,
        with_flow: bool = False,
    ) -> Optional[Conversation]:
        query = "SELECT * FROM conversations WHERE channel = %s AND channel_user_id = %s"
        params: List[Any] = [channel, channel_user_id]
        if flow_id is not None:
            query += " AND flow_id = %s"
            params.append(flow_id)
        if with_flow:
            query += " AND flow_id IS NOT NULL"
        query += " ORDER BY last_activity DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._conversation(row) if row else None

    def create_conversation(
        self,
        channel: str,
        channel_user_id: str,
        *,
        flow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        conv_id = conversation_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO conversations (id, channel, channel_user_id, flow_id, status, metadata)
                    VALUES (%s, %s, %s, %s, 'active', %s)
                    RETURNING *
                    """,
                    (conv_id, channel, channel_user_id, flow_id, Jsonb(metadata or {})),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "conversation exists for flow", {"channel": channel, "flow_id": flow_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("flow not found", {"flow_id": flow_id})
        return self._conversation(row)

    def update_conversation(
        self,
        conversation_id: str,
        *,
        flow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        touch: bool = True,
    ) -> Conversation:
        sets = ["updated_at = now()"]
        params: List[Any] = []
        if flow_id is not None:
            sets.append("flow_id = %s")
            params.append(flow_id)
        if metadata is not None:
            sets.append("metadata = %s")
            params.append(Jsonb(metadata))
        if touch:
            sets.append("last_activity = now()")
        params.append(conversation_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE conversations SET {', '.join(sets)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "conversation exists for flow", {"conversation_id": conversation_id, "flow_id": flow_id}
            )
        if not row:
            raise ConstraintViolation("conversation not found", {"conversation_id": conversation_id})
        return self._conversation(row)

    # messages ------------------------------------------------------------

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
        tokens_used: int = 0,
        cost: float = 0.0,
        idempotency_key: Optional[str] = None,
        source_namespace: Optional[str] = None,
        case_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Message:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO messages (
                        id, conversation_id, role, content, metadata, timestamp,
                        llm_provider, llm_model, tokens_used, cost,
                        idempotency_key, source_namespace, case_id
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        conversation_id,
                        role,
                        content,
                        Jsonb(metadata or {}),
                        timestamp or utcnow(),
                        llm_provider,
                        llm_model,
                        tokens_used,
                        cost,
                        idempotency_key,
                        source_namespace,
                        case_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "idempotency key already used", {"idempotency_key": idempotency_key}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("conversation not found", {"conversation_id": conversation_id})
        return self._message(row)

    def list_messages(
        self,
        conversation_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Message]:
        query = "SELECT * FROM messages WHERE conversation_id = %s"
        params: List[Any] = [conversation_id]
        if since is not None:
            query += " AND timestamp >= %s"
            params.append(since)
        query += " ORDER BY timestamp ASC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._message(row) for row in rows]

    def find_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM messages
                WHERE role = 'user'
                  AND (metadata->'originalMessage'->>'id' = %s
                       OR metadata->'originalMessage'->>'messageId' = %s)
                LIMIT 1
                """,
                (provider_message_id, provider_message_id),
            ).fetchone()
        return self._message(row) if row else None

    def find_assistant_message_by_idempotency_key(
        self, conversation_id: str, idempotency_key: str
    ) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s AND role = 'assistant' AND idempotency_key = %s
                LIMIT 1
                """,
                (conversation_id, idempotency_key),
            ).fetchone()
        return self._message(row) if row else None

    def last_external_assistant_message(self, conversation_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s
                  AND role = 'assistant'
                  AND metadata->'external'->>'namespace' IS NOT NULL
                ORDER BY timestamp DESC
                LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()
        return self._message(row) if row else None

    # tool executions, analytics, logs ------------------------------------

    def add_tool_executions(self, records: Iterable[ToolExecutionRecord]) -> int:
        rows = list(records)
        if not rows:
            return 0
        with self._connect() as conn, conn.transaction():
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO tool_executions (
                        id, conversation_id, message_id, tool_name, parameters,
                        result, status, execution_time_ms, error_message, executed_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    [
                        (
                            rec.id,
                            rec.conversation_id,
                            rec.message_id,
                            rec.tool_name,
                            Jsonb(rec.parameters or {}),
                            Jsonb(rec.result) if rec.result is not None else None,
                            rec.status,
                            rec.execution_time_ms,
                            rec.error_message,
                            rec.executed_at,
                        )
                        for rec in rows
                    ],
                )
        return len(rows)

    def list_tool_executions(self, conversation_id: str) -> List[ToolExecutionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tool_executions WHERE conversation_id = %s ORDER BY executed_at",
                (conversation_id,),
            ).fetchall()
        return [
            ToolExecutionRecord(
                id=str(row["id"]),
                conversation_id=str(row["conversation_id"]),
                message_id=str(row["message_id"]) if row.get("message_id") else None,
                tool_name=row["tool_name"],
                parameters=_json(row.get("parameters"), {}),
                result=_json(row.get("result"), None),
                status=row["status"],
                execution_time_ms=int(row.get("execution_time_ms") or 0),
                error_message=row.get("error_message"),
                executed_at=row["executed_at"],
            )
            for row in rows
        ]

    def record_analytics_event(
        self,
        event_type: str,
        *,
        conversation_id: Optional[str] = None,
        channel_type: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO analytics_events (id, event_type, conversation_id, channel_type, data)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (str(uuid.uuid4()), event_type, conversation_id, channel_type, Jsonb(data or {})),
            )

    def log_system_event(
        self,
        level: str,
        message: str,
        *,
        service: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        stack_trace: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_logs (level, message, service, metadata, user_id, conversation_id, stack_trace)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    level,
                    message,
                    service,
                    Jsonb(metadata or {}, dumps=lambda obj: json.dumps(obj, default=str)),
                    user_id,
                    conversation_id,
                    stack_trace,
                ),
            )

    # flows ---------------------------------------------------------------

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM orchestration_flows WHERE id = %s", (flow_id,)
            ).fetchone()
        if not row:
            return None
        return self._routing(row).flow

    def get_flow_routing(
        self,
        flow_id: str,
        channel_type: str,
        *,
        requested_channel_id: Optional[str] = None,
        allow_inactive: bool = False,
    ) -> Optional[RoutingResult]:
        query = (
            "SELECT * FROM ("
            + _FLOW_ROUTING_SELECT
            + """
            WHERE f.id = %s AND c.channel_type = %s AND c.is_active = true
            """
            + ("" if allow_inactive else " AND f.active = true")
            + """
            ) AS candidates
            ORDER BY CASE WHEN channel_config_id::text = %s THEN 1 ELSE 2 END, channel_priority ASC
            LIMIT 1
            """
        )
        with self._connect() as conn:
            row = conn.execute(query, (flow_id, channel_type, requested_channel_id or "")).fetchone()
        return self._routing(row) if row else None

    def list_routable_flows(
        self, channel_type: str, *, channel_config_id: Optional[str] = None
    ) -> List[RoutingResult]:
        query = (
            _FLOW_ROUTING_SELECT
            + """
            WHERE c.channel_type = %s
              AND f.active = true
              AND l.active = true
              AND c.is_active = true
            """
        )
        params: List[Any] = [channel_type]
        if channel_config_id:
            query += " AND c.id = %s::uuid"
            params.append(channel_config_id)
        query += " ORDER BY f.priority ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._routing(row) for row in rows]

    # tools and knowledge -------------------------------------------------

    def list_active_tool_definitions(self) -> List[ToolDefinitionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, name, description, parameters, permissions, implementation,
                       tool_type, config, active, created_at, updated_at
                FROM tool_definitions
                WHERE active = true
                ORDER BY created_at DESC
                """
            ).fetchall()
        return [self._tool_definition(row) for row in rows]

    def get_tool_definition(self, name: str) -> Optional[ToolDefinitionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tool_definitions WHERE name = %s", (name,)
            ).fetchone()
        return self._tool_definition(row) if row else None

    def list_knowledge_chunks(self, flow_id: str) -> List[KnowledgeChunk]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM knowledge_chunks WHERE flow_id = %s", (flow_id,)
            ).fetchall()
        return [
            KnowledgeChunk(
                id=str(row["id"]),
                flow_id=str(row["flow_id"]),
                content=row["content"],
                source=row.get("source"),
                metadata=_json(row.get("metadata"), {}),
            )
            for row in rows
        ]

    def run_readonly_query(self, sql: str, params: Sequence[Any]) -> List[dict]:
        """Execute a tool query inside a read-only transaction."""
        with self._connect() as conn, conn.transaction():
            conn.execute("SET TRANSACTION READ ONLY")
            rows = conn.execute(sql, list(params)).fetchall()
        return [dict(row) for row in rows]
