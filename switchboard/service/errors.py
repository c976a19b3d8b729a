from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - validation_error (400)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ContextNotFound(NotFoundError):
    """Session context is absent or expired."""

    error_code = "context_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Context not found for session: {session_id}",
            detail={"sessionId": session_id},
        )
        self.session_id = session_id


class ToolNotFound(NotFoundError):
    error_code = "tool_not_found"

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}", detail={"toolName": tool_name})
        self.tool_name = tool_name


class PermissionDenied(ForbiddenError):
    error_code = "permission_denied"

    def __init__(self, tool_name: str, channel_type: str) -> None:
        super().__init__(
            f"Tool '{tool_name}' is not allowed on channel '{channel_type}'",
            detail={"toolName": tool_name, "channelType": channel_type},
        )
        self.tool_name = tool_name
        self.channel_type = channel_type


class RateLimitExceeded(RateLimitedError):
    """Raised when a (channel, user, tool) window is exhausted."""

    def __init__(self, tool_name: str, retry_after_seconds: int) -> None:
        super().__init__(
            f"Rate limit exceeded for tool '{tool_name}'. Try again in {retry_after_seconds} seconds",
            detail={"toolName": tool_name, "retryAfter": retry_after_seconds},
        )
        self.tool_name = tool_name
        self.retry_after_seconds = retry_after_seconds


class ToolExecutionFailed(ServiceError):
    """Uniform failure for tools that raised or returned ``success: False``."""

    status_code = 502
    error_code = "tool_execution_failed"

    def __init__(
        self,
        tool_name: str,
        error: str,
        *,
        parameters: Optional[Dict[str, Any]] = None,
        original_error: Optional[str] = None,
        tool_result: Any = None,
    ) -> None:
        super().__init__(
            error,
            detail={
                "toolName": tool_name,
                "parameters": parameters or {},
                "originalError": original_error,
                "toolResult": tool_result,
            },
        )
        self.tool_name = tool_name
        self.error = error


class ChannelNotIdentified(ServiceError):
    """No configured channel matched an inbound payload; routing degrades to type only."""

    error_code = "channel_not_identified"


class DuplicateMessage(ServiceError):
    """The provider message id was already persisted."""

    status_code = 200
    error_code = "duplicate_message"


class FlowInactive(ServiceError):
    """The conversation is bound to a deactivated flow; no reply is sent."""

    status_code = 200
    error_code = "flow_inactive"


class QueueUnavailable(ServerError):
    status_code = 503
    error_code = "queue_unavailable"


class ConfigIncomplete(ValidationError):
    """Connector tool configuration is missing required pieces."""

    error_code = "config_incomplete"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ContextNotFound",
    "ToolNotFound",
    "PermissionDenied",
    "RateLimitExceeded",
    "ToolExecutionFailed",
    "ChannelNotIdentified",
    "DuplicateMessage",
    "FlowInactive",
    "QueueUnavailable",
    "ConfigIncomplete",
]
