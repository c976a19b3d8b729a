from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from switchboard.service.permissions import ToolPermissions
from switchboard.service.tool_registry import FunctionToolHandler, ToolDefinition
from switchboard.storage.models import SessionContext, ToolKind


def _current_time(parameters: Dict[str, Any], context: Optional[SessionContext]) -> Dict[str, Any]:
    tz_name = parameters.get("timezone") or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return {"success": False, "error": f"Unknown timezone: {tz_name}"}
    now = datetime.now(timezone.utc).astimezone(tz)
    return {
        "success": True,
        "timezone": tz_name,
        "iso": now.isoformat(),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M"),
        "weekday": now.strftime("%A"),
    }


def _conversation_context(
    parameters: Dict[str, Any], context: Optional[SessionContext]
) -> Dict[str, Any]:
    if context is None:
        return {"success": False, "error": "No active context"}
    limit = int(parameters.get("limit") or 10)
    history = context.conversation_history[-limit:]
    return {
        "success": True,
        "conversationId": context.conversation_id,
        "channelType": context.channel_type,
        "messageCount": len(context.conversation_history),
        "recentMessages": [{"role": m.role, "content": m.content} for m in history],
        "toolExecutions": len(context.tool_executions),
    }


def builtin_tools() -> List[ToolDefinition]:
    """Tools declared in code; they survive a failed or empty dynamic load."""
    return [
        ToolDefinition(
            name="get_current_time",
            description="Current date and time, optionally in an IANA timezone.",
            handler=FunctionToolHandler(_current_time),
            parameters={
                "type": "object",
                "properties": {"timezone": {"type": "string"}},
                "required": [],
            },
            permissions=ToolPermissions(),
            kind=ToolKind.BUILTIN,
            builtin=True,
        ),
        ToolDefinition(
            name="get_conversation_context",
            description="Summary of the live conversation: recent messages and tool usage.",
            handler=FunctionToolHandler(_conversation_context),
            parameters={
                "type": "object",
                "properties": {"limit": {"type": "integer", "minimum": 1}},
                "required": [],
            },
            permissions=ToolPermissions(),
            kind=ToolKind.BUILTIN,
            builtin=True,
        ),
    ]
