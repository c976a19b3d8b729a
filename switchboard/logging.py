from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from contextlib import AbstractContextManager
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bound_contextvars

# Correlation id for one inbound webhook or API request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's request id when given, otherwise mint one."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def message_context(channel: str, channel_user_id: str) -> AbstractContextManager:
    """Bind the channel and sender to every event logged while a message is handled."""
    return bound_contextvars(channel=channel, channel_user_id=channel_user_id)


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


_SECRET_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization")
_PHONE_KEYS = frozenset({"phone", "phone_number", "to_number", "user_id", "channel_user_id"})
_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*(@[A-Za-z0-9.-]+)")
# Telegram bot tokens travel inside request URLs
_BOT_TOKEN_RE = re.compile(r"bot\d+:[A-Za-z0-9_-]+")
_BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+")


def _redact_value(key: str, value: str) -> str:
    if any(secret in key for secret in _SECRET_KEYS):
        return value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    if key in _PHONE_KEYS and value.lstrip("+").isdigit():
        return value[:4] + "***" + value[-2:] if len(value) > 6 else "***"
    value = _BOT_TOKEN_RE.sub("bot***", value)
    value = _BEARER_RE.sub("Bearer ***", value)
    if "@" in value:
        value = _EMAIL_RE.sub(r"\1***\2", value)
    return value


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials, phone numbers, bot tokens and email addresses."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        event_dict[key] = _redact_value(key.lower(), value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _configure_structlog(log_level: str, json_output: bool, development_mode: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_ERROR_SCRUBBERS = [
    re.compile(r"(?i)(password|secret|token|api.?key|credential)\s*[:=]\s*\S+"),
    re.compile(r"(?i)(postgres(?:ql)?|redis)://\S+"),
    _BOT_TOKEN_RE,
    _BEARER_RE,
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp)/\S+"),
]

MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: Optional[str], *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, credentials and paths from an error message.

    Applied before error text is persisted in a system log row or returned in
    an API envelope.
    """
    if not error:
        return "An error occurred"
    result = error
    for pattern in _ERROR_SCRUBBERS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_ERROR_LENGTH:
        result = result[: MAX_ERROR_LENGTH - 3] + "..."
    return result
