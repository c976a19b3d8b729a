import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from psycopg import errors

from switchboard.storage.errors import ConstraintViolation
from switchboard.storage.models import ToolDefinitionRecord, utcnow
from switchboard.storage.postgres import REQUIRED_TABLES, PostgresStore


class TestMemoryStoreConstraints:
    def test_one_conversation_per_flow(self, store, seed):
        flow = seed.flow(seed.channel("whatsapp"))
        store.create_conversation("whatsapp", "1", flow_id=flow.id)
        with pytest.raises(ConstraintViolation):
            store.create_conversation("whatsapp", "1", flow_id=flow.id)
        # flowless conversations are not constrained
        store.create_conversation("whatsapp", "1")
        store.create_conversation("whatsapp", "1")

    def test_idempotency_key_unique_within_conversation(self, store):
        first = store.create_conversation("whatsapp", "1")
        second = store.create_conversation("whatsapp", "2")
        store.add_message(first.id, "assistant", "hi", idempotency_key="k")
        store.add_message(second.id, "assistant", "hi", idempotency_key="k")
        with pytest.raises(ConstraintViolation):
            store.add_message(first.id, "assistant", "again", idempotency_key="k")

    def test_message_needs_conversation(self, store):
        with pytest.raises(ConstraintViolation):
            store.add_message(str(uuid.uuid4()), "user", "hi")

    def test_tool_names_are_unique(self, store):
        store.add_tool_definition(ToolDefinitionRecord(id="1", name="lookup"))
        with pytest.raises(ConstraintViolation):
            store.add_tool_definition(ToolDefinitionRecord(id="2", name="lookup"))

    def test_provider_id_lookup_ignores_replies(self, store):
        conversation = store.create_conversation("whatsapp", "1")
        store.add_message(conversation.id, "assistant", "x", metadata={"originalMessage": {"id": "m1"}})
        assert store.find_message_by_provider_id("m1") is None
        store.add_message(conversation.id, "user", "x", metadata={"originalMessage": {"messageId": "m1"}})
        assert store.find_message_by_provider_id("m1").role == "user"

    def test_list_messages_since(self, store):
        conversation = store.create_conversation("webchat", "v")
        now = utcnow()
        store.add_message(conversation.id, "user", "old", timestamp=now - timedelta(hours=1))
        store.add_message(conversation.id, "user", "new", timestamp=now)
        assert [m.content for m in store.list_messages(conversation.id, since=now)] == ["new"]

    def test_returned_rows_are_copies(self, store):
        conversation = store.create_conversation("webchat", "v", metadata={"a": 1})
        conversation.metadata["a"] = 2
        assert store.get_conversation(conversation.id).metadata == {"a": 1}

    def test_flow_routing_prefers_requested_channel(self, store, seed):
        first, second = seed.channel("whatsapp"), seed.channel("whatsapp")
        flow = seed.flow(first)
        store.add_flow(flow, [second.id])
        assert store.get_flow_routing(flow.id, "whatsapp", requested_channel_id=second.id).channel_config_id == second.id
        assert store.get_flow_routing(flow.id, "telegram") is None


def _postgres_store():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = MagicMock()
    conn = MagicMock()
    store.pool.connection.return_value.__enter__.return_value = conn
    return store, conn


class TestPostgresStoreUnit:
    def test_schema_check_reports_missing_tables(self):
        store, conn = _postgres_store()
        conn.execute.return_value.fetchall.return_value = [{"table_name": "conversations"}]
        with pytest.raises(RuntimeError) as excinfo:
            store.check_schema()
        assert "channel_configs" in str(excinfo.value)

        conn.execute.return_value.fetchall.return_value = [{"table_name": t} for t in REQUIRED_TABLES]
        store.check_schema()

    def test_unique_violation_becomes_constraint_violation(self):
        store, conn = _postgres_store()
        conn.execute.side_effect = errors.UniqueViolation("duplicate key")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.add_message(str(uuid.uuid4()), "assistant", "hi", idempotency_key="k")
        assert excinfo.value.detail == {"idempotency_key": "k"}

    def test_routing_row_mapping(self):
        channel_id, flow_id = uuid.uuid4(), uuid.uuid4()
        routing = PostgresStore._routing(
            {
                "id": flow_id,
                "name": "Sales",
                "llm_id": None,
                "flow_config": '{"systemPrompt": "Sell."}',
                "enabled_tools": ["lookup"],
                "routing_conditions": None,
                "priority": 5,
                "active": True,
                "llm_provider": "openai",
                "llm_model": "gpt-4o-mini",
                "llm_config": {"temperature": 0.1},
                "channel_config": {"instanceId": "i"},
                "channel_config_id": channel_id,
            }
        )
        assert routing.flow.id == str(flow_id)
        assert routing.system_prompt == "Sell."
        assert routing.flow.routing_conditions == {}
        assert routing.channel_config_id == str(channel_id)
        assert routing.enabled_tools == ["lookup"]

    def test_provider_id_lookup_queries_original_message(self):
        store, conn = _postgres_store()
        conn.execute.return_value.fetchone.return_value = None
        assert store.find_message_by_provider_id("wamid.1") is None
        sql, params = conn.execute.call_args.args
        assert "originalMessage" in sql
        assert params == ("wamid.1", "wamid.1")
