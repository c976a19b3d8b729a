import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from switchboard.service.errors import ContextNotFound
from switchboard.storage.context_store import (
    MemoryContextStore,
    generate_session_id,
    is_uuid,
    merge_context,
)
from switchboard.storage.models import ContextMessage, SessionContext
from switchboard.storage.redis_cache import KEY_PREFIX, RedisContextStore

CONVERSATION_ID = "2b6f0cc9-0a8f-4c4e-9a53-6a1d3f3c0d11"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


def _context(session_id="whatsapp:15551234567"):
    return SessionContext(
        session_id=session_id,
        conversation_id=CONVERSATION_ID,
        channel_type="whatsapp",
        user_id="15551234567",
    )


class TestSessionIds:
    def test_conversation_scoped_when_uuid_known(self):
        assert generate_session_id("whatsapp", "1555", CONVERSATION_ID) == f"whatsapp:1555:{CONVERSATION_ID}"

    def test_user_scoped_without_conversation(self):
        assert generate_session_id("telegram", "42") == "telegram:42"
        assert generate_session_id("telegram", "42", "not-a-uuid") == "telegram:42"

    def test_is_uuid(self):
        assert is_uuid(CONVERSATION_ID)
        assert not is_uuid("abc")
        assert not is_uuid(None)


class TestMergeContext:
    def test_identity_fields_are_preserved(self):
        current = _context()
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        merged = merge_context(
            current,
            {"session_id": "other", "metadata": {"a": 1}},
            now=now,
        )
        assert merged.session_id == current.session_id
        assert merged.metadata == {"a": 1}
        assert merged.updated_at == now

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValueError):
            merge_context(_context(), {"bogus": 1}, now=datetime.now(timezone.utc))


class TestMemoryContextStore:
    async def test_set_get_roundtrip_returns_copy(self):
        store = MemoryContextStore()
        context = _context()
        await store.set(context.session_id, context)

        loaded = await store.get(context.session_id)
        loaded.metadata["mutated"] = True

        again = await store.get(context.session_id)
        assert "mutated" not in again.metadata
        assert again.expires_at is not None

    async def test_expired_context_is_absent_and_removed(self):
        clock = FakeClock()
        store = MemoryContextStore(default_ttl=10, clock=clock)
        await store.set("s1", _context("s1"))

        clock.advance(11)

        assert await store.get("s1") is None
        assert not await store.exists("s1")
        assert store.size() == 0

    async def test_update_merges_and_keeps_expiry(self):
        clock = FakeClock()
        store = MemoryContextStore(default_ttl=60, clock=clock)
        await store.set("s1", _context("s1"))
        original = await store.get("s1")

        clock.advance(5)
        updated = await store.update(
            "s1", {"conversation_history": [ContextMessage(role="user", content="hi")]}
        )

        assert updated.expires_at == original.expires_at
        assert updated.conversation_history[0].content == "hi"

    async def test_update_missing_raises(self):
        store = MemoryContextStore()
        with pytest.raises(ContextNotFound):
            await store.update("missing", {"metadata": {}})

    async def test_zero_ttl_is_honoured(self):
        clock = FakeClock()
        store = MemoryContextStore(default_ttl=60, clock=clock)
        await store.set("s1", _context("s1"), ttl_seconds=0)

        clock.advance(1)

        assert await store.get("s1") is None

    async def test_set_expiry_extends_lifetime(self):
        clock = FakeClock()
        store = MemoryContextStore(default_ttl=10, clock=clock)
        await store.set("s1", _context("s1"))
        await store.set_expiry("s1", 100)

        clock.advance(50)

        assert await store.get("s1") is not None

    async def test_sweep_and_listing(self):
        clock = FakeClock()
        store = MemoryContextStore(default_ttl=10, clock=clock)
        await store.set("old", _context("old"))
        await store.set("fresh", _context("fresh"), ttl_seconds=100)

        clock.advance(20)

        assert await store.get_all_sessions() == ["fresh"]
        await store.clear_all()
        assert store.size() == 0


class TestRedisContextStore:
    def _store(self, clock=None):
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        client.ttl = AsyncMock(return_value=120)
        client.ping = AsyncMock(return_value=True)
        store = RedisContextStore("redis://test", client=client, clock=clock or FakeClock())
        return store, client

    async def test_set_writes_json_with_ttl(self):
        store, client = self._store()
        await store.set("s1", _context("s1"), ttl_seconds=30)

        key, raw = client.set.call_args.args
        assert key == f"{KEY_PREFIX}s1"
        assert client.set.call_args.kwargs["ex"] == 30
        assert json.loads(raw)["conversation_id"] == CONVERSATION_ID

    async def test_set_leaves_caller_context_untouched(self):
        store, client = self._store()
        context = _context("s1")

        await store.set("s1", context, ttl_seconds=30)

        assert context.expires_at is None
        assert json.loads(client.set.call_args.args[1])["expires_at"]

    async def test_zero_ttl_drops_the_key(self):
        store, client = self._store()

        await store.set("s1", _context("s1"), ttl_seconds=0)

        client.set.assert_not_awaited()
        client.delete.assert_awaited_once_with(f"{KEY_PREFIX}s1")

    async def test_expired_payload_is_deleted_on_read(self):
        clock = FakeClock()
        store, client = self._store(clock)
        context = _context("s1")
        context.expires_at = clock.now - timedelta(seconds=1)
        client.get.return_value = json.dumps(context.to_dict())

        assert await store.get("s1") is None
        client.delete.assert_awaited_with(f"{KEY_PREFIX}s1")

    async def test_corrupt_payload_is_treated_as_absent(self):
        store, client = self._store()
        client.get.return_value = "{not json"

        assert await store.get("s1") is None
        client.delete.assert_awaited()

    async def test_update_keeps_remaining_ttl(self):
        clock = FakeClock()
        store, client = self._store(clock)
        context = _context("s1")
        context.expires_at = clock.now + timedelta(seconds=120)
        client.get.return_value = json.dumps(context.to_dict())

        updated = await store.update("s1", {"metadata": {"k": "v"}})

        assert updated.metadata == {"k": "v"}
        assert client.set.call_args.kwargs["ex"] == 120

    async def test_update_missing_raises(self):
        store, _ = self._store()
        with pytest.raises(ContextNotFound):
            await store.update("s1", {"metadata": {}})

    async def test_health_reports_ping(self):
        store, client = self._store()
        assert await store.is_healthy() is True
