from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from switchboard.logging import get_logger
from switchboard.storage.models import IncomingMessage, RoutingResult

logger = get_logger(__name__)

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class RoutableFlowSource(Protocol):
    def list_routable_flows(
        self, channel_type: str, *, channel_config_id: Optional[str] = None
    ) -> List[RoutingResult]:
        ...


@dataclass
class RoutingContext:
    """Fields of an inbound message that routing conditions can test."""

    channel_type: str
    content: str = ""
    phone_number: Optional[str] = None
    bot_username: Optional[str] = None
    email_address: Optional[str] = None
    user_roles: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @classmethod
    def from_message(cls, message: IncomingMessage) -> "RoutingContext":
        metadata = message.metadata or {}
        sender = metadata.get("from") if isinstance(metadata.get("from"), dict) else {}
        return cls(
            channel_type=message.channel_type,
            content=message.content or "",
            phone_number=metadata.get("phoneNumber")
            or (message.channel_user_id if message.channel_type == "whatsapp" else None),
            bot_username=sender.get("username") or metadata.get("botUsername"),
            email_address=message.channel_user_id if message.channel_type == "email" else None,
            user_roles=list(metadata.get("userRoles") or metadata.get("roles") or []),
            metadata=metadata,
            timestamp=message.timestamp,
        )


def normalize_phone_number(phone: str) -> str:
    return "+" + re.sub(r"\D", "", phone or "")


def _to_minutes(value: str) -> int:
    hours, _, minutes = str(value).partition(":")
    return int(hours) * 60 + int(minutes or 0)


class RoutingMatcher:
    """Evaluate a flow's routing_conditions against an inbound message.

    Every condition present must hold. An empty condition set matches any
    message on the channel.
    """

    def matches(self, conditions: Optional[Dict[str, Any]], ctx: RoutingContext) -> bool:
        if not conditions:
            return True

        phones = conditions.get("phone_numbers") or []
        if phones:
            if not ctx.phone_number:
                return False
            wanted = normalize_phone_number(ctx.phone_number)
            if not any(normalize_phone_number(p) == wanted for p in phones):
                return False

        bot_username = conditions.get("bot_username")
        if bot_username and ctx.bot_username != bot_username:
            return False

        email = conditions.get("email_address")
        if email and (ctx.email_address or "").lower() != str(email).lower():
            return False

        roles = conditions.get("user_roles") or []
        if roles and not set(roles) & set(ctx.user_roles):
            return False

        ranges = conditions.get("time_ranges") or []
        if ranges:
            when = ctx.timestamp or datetime.now(timezone.utc)
            if not any(self.in_time_range(when, r) for r in ranges):
                return False

        expected_meta = conditions.get("metadata") or {}
        for key, value in expected_meta.items():
            if ctx.metadata.get(key) != value:
                return False

        pattern = conditions.get("messagePattern") or conditions.get("pattern")
        if pattern:
            try:
                if not re.search(pattern, ctx.content or "", re.IGNORECASE):
                    return False
            except re.error as exc:
                logger.warning("routing_pattern_invalid", pattern=pattern, error=str(exc))

        return True

    def in_time_range(self, when: datetime, time_range: Dict[str, Any]) -> bool:
        tz_name = time_range.get("timezone") or "UTC"
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("routing_timezone_invalid", timezone=tz_name)
            return False
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        local = when.astimezone(tz)
        days = time_range.get("days") or []
        if days and _WEEKDAYS[local.weekday()] not in days:
            return False
        try:
            start = _to_minutes(time_range["start"])
            end = _to_minutes(time_range["end"])
        except (KeyError, ValueError):
            logger.warning("routing_time_range_invalid", time_range=time_range)
            return False
        current = local.hour * 60 + local.minute
        return start <= current <= end

    def find_matching_flows(
        self, ctx: RoutingContext, candidates: Sequence[RoutingResult]
    ) -> List[RoutingResult]:
        matched = [c for c in candidates if self.matches(c.flow.routing_conditions, ctx)]
        return sorted(matched, key=lambda c: c.flow.priority)


class FlowRouter:
    """Pick an active flow for a message by channel and routing conditions."""

    def __init__(self, store: RoutableFlowSource, matcher: Optional[RoutingMatcher] = None) -> None:
        self.store = store
        self.matcher = matcher or RoutingMatcher()

    def _candidates(self, message: IncomingMessage) -> List[RoutingResult]:
        metadata = message.metadata or {}
        requested = metadata.get("channelId") or metadata.get("channel_config_id")
        if requested:
            rows = self.store.list_routable_flows(message.channel_type, channel_config_id=requested)
            if rows:
                return rows
            logger.warning(
                "routing_channel_without_flows",
                channel_type=message.channel_type,
                requested_channel_id=requested,
            )
        return self.store.list_routable_flows(message.channel_type)

    def route(self, message: IncomingMessage) -> Optional[RoutingResult]:
        candidates = self._candidates(message)
        if not candidates:
            logger.warning("routing_no_active_flows", channel_type=message.channel_type)
            return None
        ctx = RoutingContext.from_message(message)
        for candidate in candidates:
            if self.matcher.matches(candidate.flow.routing_conditions, ctx):
                logger.info(
                    "routing_flow_matched",
                    flow_id=candidate.flow.id,
                    flow_name=candidate.flow.name,
                    priority=candidate.flow.priority,
                )
                return candidate
        fallback = candidates[0]
        logger.warning(
            "routing_fallback_highest_priority",
            flow_id=fallback.flow.id,
            evaluated=len(candidates),
        )
        return fallback

    def test_route(self, message: IncomingMessage) -> Dict[str, Any]:
        result = self.route(message)
        if result is None:
            return {"matched": False, "reason": "No active flows found for channel"}
        return {"matched": True, "flow": result.flow}
