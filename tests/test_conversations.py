import uuid
from unittest.mock import MagicMock

from switchboard.service.conversations import (
    ConversationService,
    extract_explicit_flow_id,
    originated_by_flow,
)
from switchboard.storage.models import IncomingMessage, OutgoingMessage, ProcessingResult, ToolExecution

USER = "15551234567"


def _message(content="hi", **metadata):
    return IncomingMessage("whatsapp", USER, content, metadata=metadata)


class TestExplicitFlowId:
    def test_message_metadata_wins(self):
        pinned, other = str(uuid.uuid4()), str(uuid.uuid4())
        assert extract_explicit_flow_id({"flowId": other}, {"flowId": pinned}) == pinned
        assert extract_explicit_flow_id({"flowId": other}, {}) == other

    def test_external_context_routing(self):
        flow_id = str(uuid.uuid4())
        metadata = {"external_context": {"crm": {"routing": {"flowId": flow_id}}}}
        assert extract_explicit_flow_id(metadata) == flow_id
        assert originated_by_flow(metadata, flow_id)
        assert not originated_by_flow(metadata, str(uuid.uuid4()))
        assert not originated_by_flow({}, flow_id)

    def test_non_uuid_values_are_ignored(self):
        assert extract_explicit_flow_id({"flowId": "sales"}, {"flowId": 7}) is None
        assert extract_explicit_flow_id(None) is None


class TestResolveConversation:
    def test_new_conversation_is_bound_to_flow(self, store, seed):
        channel = seed.channel("whatsapp")
        flow = seed.flow(channel, name="Sales")
        routing = store.get_flow_routing(flow.id, "whatsapp")
        service = ConversationService(store)

        conversation_id = service.resolve_conversation(_message(channelId=channel.id), None, routing)

        conversation = store.get_conversation(conversation_id)
        assert conversation.flow_id == flow.id
        assert conversation.metadata["flowName"] == "Sales"
        assert conversation.metadata["channel_config_id"] == channel.id

    def test_flow_switch_opens_new_conversation(self, store, seed):
        channel = seed.channel("whatsapp")
        first = store.get_flow_routing(seed.flow(channel, name="A").id, "whatsapp")
        second = store.get_flow_routing(seed.flow(channel, name="B").id, "whatsapp")
        service = ConversationService(store)

        original = service.resolve_conversation(_message(), None, first)
        switched = service.resolve_conversation(_message(), None, second)

        assert switched != original
        assert store.get_conversation(original).flow_id == first.flow.id
        assert store.get_conversation(switched).flow_id == second.flow.id
        assert service.resolve_conversation(_message(), None, first) == original

    def test_flowless_conversation_gets_bound_once(self, store, seed):
        channel = seed.channel("whatsapp")
        routing = store.get_flow_routing(seed.flow(channel).id, "whatsapp")
        service = ConversationService(store)
        conversation_id = service.create("whatsapp", USER, None, {"source": "integration"})

        assert service.resolve_conversation(_message(), conversation_id, routing) == conversation_id

        conversation = store.get_conversation(conversation_id)
        assert conversation.flow_id == routing.flow.id
        assert conversation.metadata == {"source": "integration", "channel_config_id": channel.id}

    def test_invalid_channel_id_is_dropped(self, store):
        service = ConversationService(store)
        conversation_id = service.resolve_conversation(_message(channelId="not-a-uuid"), None, None)
        assert "channel_config_id" not in store.get_conversation(conversation_id).metadata


class TestConversationFlowLookup:
    def test_inactive_bound_flow_is_reported(self, store, seed):
        channel = seed.channel("whatsapp")
        flow = seed.flow(channel)
        service = ConversationService(store)
        conversation_id = service.create("whatsapp", USER, flow.id, {})

        bound = service.try_load_flow_from_conversation("whatsapp", USER)
        assert bound.routing.flow.id == flow.id
        assert bound.flow_inactive is False

        store.set_flow_active(flow.id, False)
        bound = service.try_load_flow_from_conversation("whatsapp", USER)
        assert bound.conversation_id == conversation_id
        assert bound.flow_inactive is True
        assert bound.routing is None

    def test_no_flow_bearing_conversation(self, store):
        service = ConversationService(store)
        service.create("whatsapp", USER, None, {})
        assert service.try_load_flow_from_conversation("whatsapp", USER) is None


class TestSaveConversation:
    def _result(self):
        return ProcessingResult(
            conversation_id="session-only",
            outgoing_message=OutgoingMessage(USER, "Your order shipped."),
            tool_executions=[
                ToolExecution(id="t1", tool_name="lookup_order", parameters={"id": "A1"}, status="success", result={"ok": True}),
                ToolExecution(id="t2", tool_name="refund", parameters={}, status="failed", error="Tool timed out"),
            ],
            tokens_used=12,
            llm_provider="stub",
            llm_model="gpt-test",
        )

    def test_messages_tools_and_analytics_are_written(self, store):
        service = ConversationService(store)
        message = _message("where is A1?", messageId="wamid.9")
        result = self._result()

        conversation_id = service.save_conversation_and_messages(message, result, None)
        service.log_tool_executions(result, message, conversation_id)

        user_turn, reply = store.list_messages(conversation_id)
        assert user_turn.metadata["originalMessage"]["messageId"] == "wamid.9"
        assert reply.content == "Your order shipped."
        assert reply.tokens_used == 12
        assert [r.status for r in store.list_tool_executions(conversation_id)] == ["success", "timeout"]
        assert all(r.message_id == reply.id for r in store.list_tool_executions(conversation_id))
        assert store.analytics_events[0]["event_type"] == "message_processed"
        assert [log["level"] for log in store.system_logs] == ["info", "error"]

        assert service.is_duplicate("wamid.9")
        assert not service.is_duplicate("wamid.10")
        assert not service.is_duplicate(None)

    def test_external_tag_is_stored_on_reply(self, store):
        service = ConversationService(store)
        conversation_id = service.save_conversation_and_messages(
            _message(), self._result(), None, external={"namespace": "crm", "case_id": "C-1"}
        )
        tagged = store.last_external_assistant_message(conversation_id)
        assert tagged.source_namespace == "crm"
        assert tagged.case_id == "C-1"

    def test_failure_is_logged_not_raised(self):
        store = MagicMock()
        store.find_latest_conversation.side_effect = RuntimeError("connection reset")
        service = ConversationService(store)

        assert service.save_conversation_and_messages(_message(), self._result(), None) is None

        level, text = store.log_system_event.call_args.args
        assert level == "error"
        assert "connection reset" in text
        assert store.log_system_event.call_args.kwargs["service"] == "webhooks"
