from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from switchboard.logging import get_logger
from switchboard.service.errors import PermissionDenied, RateLimitExceeded
from switchboard.storage.models import RateLimitEntry

logger = get_logger(__name__)

DEFAULT_TOOL_CHANNELS = ["whatsapp", "telegram", "webchat", "email"]


@dataclass
class RateLimit:
    requests: int
    window_seconds: int


@dataclass
class ToolPermissions:
    """Channel allow-list and optional rate limit attached to a tool."""

    channels: List[str] = field(default_factory=list)
    rate_limit: Optional[RateLimit] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ToolPermissions":
        if not data:
            return cls()
        rate = data.get("rateLimit") or data.get("rate_limit")
        rate_limit = None
        if rate:
            rate_limit = RateLimit(
                requests=int(rate.get("requests", rate.get("requestCount", 0))),
                window_seconds=int(rate.get("window", rate.get("windowSeconds", 60))),
            )
        return cls(channels=list(data.get("channels") or []), rate_limit=rate_limit)

    @classmethod
    def default(cls) -> "ToolPermissions":
        return cls(
            channels=list(DEFAULT_TOOL_CHANNELS),
            rate_limit=RateLimit(requests=10, window_seconds=60),
        )


class PermissionManager:
    """Channel allow-lists and per (channel, user, tool) fixed-window counters.

    ``check_rate_limit`` never awaits, so a check-and-increment is atomic with
    respect to other tasks on the same event loop.
    """

    def __init__(
        self,
        *,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @staticmethod
    def _key(channel_type: str, user_id: str, tool_name: str) -> str:
        return f"{channel_type}:{user_id}:{tool_name}"

    def check_permission(
        self, tool_name: str, channel_type: str, permissions: Optional[ToolPermissions]
    ) -> None:
        if not permissions or not permissions.channels:
            return
        if channel_type not in permissions.channels:
            logger.warning(
                "tool_permission_denied",
                tool=tool_name,
                channel=channel_type,
                allowed=permissions.channels,
            )
            raise PermissionDenied(tool_name, channel_type)

    def check_rate_limit(
        self,
        tool_name: str,
        user_id: str,
        channel_type: str,
        permissions: Optional[ToolPermissions],
    ) -> None:
        if not permissions or not permissions.rate_limit:
            return
        limit = permissions.rate_limit
        key = self._key(channel_type, user_id, tool_name)
        now = self._clock()
        entry = self._entries.get(key)

        if entry is None or now >= entry.reset_at:
            self._entries[key] = RateLimitEntry(count=1, reset_at=now + limit.window_seconds)
            return

        if entry.count >= limit.requests:
            retry_after = max(1, math.ceil(entry.reset_at - now))
            logger.warning(
                "tool_rate_limited",
                tool=tool_name,
                channel=channel_type,
                user_id=user_id,
                retry_after=retry_after,
            )
            raise RateLimitExceeded(tool_name, retry_after)

        entry.count += 1

    def reset_rate_limit(self, tool_name: str, user_id: str, channel_type: str) -> None:
        self._entries.pop(self._key(channel_type, user_id, tool_name), None)

    def get_rate_limit_status(
        self, tool_name: str, user_id: str, channel_type: str
    ) -> Optional[dict]:
        entry = self._entries.get(self._key(channel_type, user_id, tool_name))
        if entry is None:
            return None
        return {
            "count": entry.count,
            "resetAt": entry.reset_at,
            "remainingSeconds": max(0, math.ceil(entry.reset_at - self._clock())),
        }

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.reset_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def size(self) -> int:
        return len(self._entries)

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug("rate_limit_sweep", removed=removed)

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._entries.clear()
