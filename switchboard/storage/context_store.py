from __future__ import annotations

import asyncio
import copy
import re
from abc import ABC, abstractmethod
from dataclasses import fields, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from switchboard.logging import get_logger
from switchboard.service.errors import ContextNotFound
from switchboard.storage.models import SessionContext, utcnow

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_CONTEXT_FIELDS = {f.name for f in fields(SessionContext)}


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def generate_session_id(
    channel_type: str, user_id: str, conversation_id: Optional[str] = None
) -> str:
    """Session ids are per channel user, or per conversation when one is known."""
    if conversation_id and is_uuid(conversation_id):
        return f"{channel_type}:{user_id}:{conversation_id}"
    return f"{channel_type}:{user_id}"


def merge_context(
    current: SessionContext, partial: Mapping[str, Any], *, now: datetime
) -> SessionContext:
    """Shallow-merge ``partial`` over ``current`` keeping identity and expiry fields."""
    unknown = set(partial) - _CONTEXT_FIELDS
    if unknown:
        raise ValueError(f"unknown context fields: {sorted(unknown)}")
    changes = {
        key: value
        for key, value in partial.items()
        if key not in {"session_id", "created_at", "expires_at"}
    }
    changes["updated_at"] = now
    return replace(current, **changes)


class ContextStore(ABC):
    """Session contexts keyed by session id with TTL expiry.

    Every read treats an expired entry as absent and removes it, whatever
    the backend's own expiry mechanism does.
    """

    default_ttl: int = DEFAULT_TTL_SECONDS

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionContext]:
        ...

    @abstractmethod
    async def set(
        self, session_id: str, context: SessionContext, ttl_seconds: Optional[int] = None
    ) -> None:
        ...

    @abstractmethod
    async def update(self, session_id: str, partial: Mapping[str, Any]) -> SessionContext:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    async def exists(self, session_id: str) -> bool:
        return await self.get(session_id) is not None

    @abstractmethod
    async def set_expiry(self, session_id: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def get_all_sessions(self) -> List[str]:
        ...

    @abstractmethod
    async def clear_all(self) -> None:
        ...

    async def is_healthy(self) -> bool:
        return True

    async def start(self) -> None:
        return None

    @abstractmethod
    async def shutdown(self) -> None:
        ...


class MemoryContextStore(ContextStore):
    """Process-local store with a periodic sweep of expired entries."""

    def __init__(
        self,
        *,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        sweep_interval: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._store: Dict[str, SessionContext] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def sweep(self) -> int:
        now = self._clock()
        expired = [sid for sid, ctx in self._store.items() if ctx.is_expired(now)]
        for session_id in expired:
            self._store.pop(session_id, None)
        if expired:
            logger.debug("context_sweep", removed=len(expired), remaining=len(self._store))
        return len(expired)

    def _live(self, session_id: str) -> Optional[SessionContext]:
        context = self._store.get(session_id)
        if context is None:
            return None
        if context.is_expired(self._clock()):
            self._store.pop(session_id, None)
            logger.debug("context_expired_on_read", session_id=session_id)
            return None
        return context

    async def get(self, session_id: str) -> Optional[SessionContext]:
        context = self._live(session_id)
        return copy.deepcopy(context) if context else None

    async def set(
        self, session_id: str, context: SessionContext, ttl_seconds: Optional[int] = None
    ) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        stored = copy.deepcopy(context)
        stored.expires_at = self._clock() + timedelta(seconds=ttl)
        self._store[session_id] = stored

    async def update(self, session_id: str, partial: Mapping[str, Any]) -> SessionContext:
        current = self._live(session_id)
        if current is None:
            raise ContextNotFound(session_id)
        merged = merge_context(current, copy.deepcopy(dict(partial)), now=self._clock())
        self._store[session_id] = merged
        return copy.deepcopy(merged)

    async def delete(self, session_id: str) -> None:
        self._store.pop(session_id, None)

    async def set_expiry(self, session_id: str, ttl_seconds: int) -> None:
        current = self._live(session_id)
        if current is None:
            raise ContextNotFound(session_id)
        current.expires_at = self._clock() + timedelta(seconds=ttl_seconds)

    async def get_all_sessions(self) -> List[str]:
        self.sweep()
        return list(self._store.keys())

    async def clear_all(self) -> None:
        self._store.clear()

    def size(self) -> int:
        return len(self._store)

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._store.clear()
