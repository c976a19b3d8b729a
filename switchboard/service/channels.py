"""Provider adapters: inbound payload normalization and outbound sends."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from switchboard.logging import get_logger
from switchboard.storage.models import ChannelType, IncomingMessage, OutgoingMessage, utcnow

logger = get_logger(__name__)

ULTRAMSG_API_BASE = "https://api.ultramsg.com"
TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
DIALOG360_API_BASE = "https://waba-v2.360dialog.io"
TELEGRAM_API_BASE = "https://api.telegram.org"

_WRAPPED_MARKERS = ("object", "entry", "event_type", "instanceId", "MessageSid")


class ProviderSendError(Exception):
    """Outbound provider call failed.

    ``status_code`` is the provider's HTTP status when one was received;
    ``None`` means the request never completed (network or timeout).
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, provider: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider


def unwrap_payload(payload: Any) -> Dict[str, Any]:
    """Some gateways forward the provider webhook under a ``body`` key."""
    if not isinstance(payload, dict):
        return {}
    body = payload.get("body")
    if isinstance(body, dict) and any(marker in body for marker in _WRAPPED_MARKERS):
        return body
    return payload


def cloud_api_value(payload: Dict[str, Any]) -> Dict[str, Any]:
    entries = payload.get("entry") or [{}]
    changes = (entries[0] or {}).get("changes") or [{}]
    return (changes[0] or {}).get("value") or {}


def is_status_only_payload(payload: Any) -> bool:
    """True for Cloud API callbacks that carry delivery statuses but no message."""
    data = unwrap_payload(payload)
    if data.get("object") != "whatsapp_business_account" or not data.get("entry"):
        return False
    value = cloud_api_value(data)
    return bool(value.get("statuses")) and not value.get("messages")


def _epoch_to_datetime(value: Any) -> datetime:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return utcnow()
    if seconds > 1e12:
        seconds /= 1000.0
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _strip_whatsapp_suffix(value: str) -> str:
    return str(value).split("@", 1)[0]


@dataclass
class WhatsAppChannelSettings:
    provider: str = "ultramsg"
    api_token: Optional[str] = None
    instance_id: Optional[str] = None
    phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    webhook_secret: Optional[str] = None
    waba_id: Optional[str] = None

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "WhatsAppChannelSettings":
        config = config or {}
        return cls(
            provider=(config.get("provider") or "ultramsg").lower(),
            api_token=config.get("token") or config.get("apiToken"),
            instance_id=config.get("instanceId"),
            phone_number=config.get("phoneNumber"),
            phone_number_id=config.get("phoneNumberId"),
            account_sid=config.get("accountSid"),
            auth_token=config.get("authToken"),
            webhook_secret=config.get("webhookSecret"),
            waba_id=config.get("wabaId"),
        )


class ChannelAdapter(ABC):
    channel_type: str = ""

    def __init__(self, *, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout = timeout
        self.transport = transport

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=min(10.0, self.timeout)),
            transport=self.transport,
            **kwargs,
        )

    def _message(self, user_id: str, content: str, metadata: Dict[str, Any], timestamp: Optional[datetime] = None) -> IncomingMessage:
        return IncomingMessage(
            channel_type=self.channel_type,
            channel_user_id=user_id,
            content=content or "",
            conversation_id=user_id,
            timestamp=timestamp or utcnow(),
            metadata=metadata,
        )

    @abstractmethod
    def normalize(self, payload: Any) -> Optional[IncomingMessage]:
        """Turn a provider payload into a message, or None when there is nothing to answer."""

    @abstractmethod
    async def send(self, channel_config: Optional[Dict[str, Any]], message: OutgoingMessage) -> Dict[str, Any]:
        ...

    async def _post(self, provider: str, client: httpx.AsyncClient, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await client.post(url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "channel_send_rejected",
                provider=provider,
                status_code=exc.response.status_code,
                body=exc.response.text[:300],
            )
            raise ProviderSendError(
                f"{provider} responded {exc.response.status_code}",
                status_code=exc.response.status_code,
                provider=provider,
            ) from exc
        except httpx.TimeoutException as exc:
            logger.error("channel_send_timeout", provider=provider, error=str(exc))
            raise ProviderSendError(f"{provider} request timed out", provider=provider) from exc
        except httpx.TransportError as exc:
            logger.error("channel_send_connect_error", provider=provider, error=str(exc))
            raise ProviderSendError(f"{provider} unreachable: {exc}", provider=provider) from exc
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}


def _cloud_api_content(message: Dict[str, Any]) -> str:
    kind = message.get("type")
    if kind == "text":
        return (message.get("text") or {}).get("body") or ""
    if kind in ("image", "video", "document"):
        return (message.get(kind) or {}).get("caption") or ""
    if kind == "location" and message.get("location"):
        loc = message["location"]
        return f"Location: {loc.get('latitude')}, {loc.get('longitude')}"
    if kind == "contacts" and message.get("contacts"):
        return f"Contact shared: {message['contacts']}"
    return ""


class WhatsAppAdapter(ChannelAdapter):
    """Normalizes 360dialog Cloud API, Twilio and UltraMsg webhooks."""

    channel_type = ChannelType.WHATSAPP.value

    def normalize(self, payload: Any) -> Optional[IncomingMessage]:
        data = unwrap_payload(payload)
        if not data:
            return None

        if data.get("object") == "whatsapp_business_account" and data.get("entry"):
            value = cloud_api_value(data)
            messages = value.get("messages") or []
            if not messages:
                logger.debug(
                    "whatsapp_cloud_payload_ignored",
                    has_statuses=bool(value.get("statuses")),
                    has_user_actions=bool(value.get("user_actions")),
                )
                return None
            message = messages[0]
            sender = str(message.get("from") or "").lstrip("+")
            entry_id = (data["entry"][0] or {}).get("id")
            phone_number_id = (value.get("metadata") or {}).get("phone_number_id") or entry_id or "default"
            return self._message(
                sender,
                _cloud_api_content(message),
                {
                    "messageId": message.get("id"),
                    "messageType": message.get("type"),
                    "instanceId": phone_number_id,
                    "toNumber": phone_number_id,
                    "wabaId": entry_id,
                },
                _epoch_to_datetime(message.get("timestamp")),
            )

        if data.get("MessageSid") and data.get("From") and "Body" in data:
            sender = str(data["From"]).replace("whatsapp:", "")
            recipient = str(data.get("To") or "").replace("whatsapp:", "") or None
            try:
                media = int(data.get("NumMedia") or 0)
            except (TypeError, ValueError):
                media = 0
            return self._message(
                sender,
                data.get("Body") or "",
                {
                    "messageId": data["MessageSid"],
                    "messageType": "media" if media > 0 else "text",
                    "instanceId": recipient or "default",
                    "toNumber": recipient,
                },
                _epoch_to_datetime(data.get("Timestamp")) if data.get("Timestamp") else None,
            )

        if isinstance(data.get("data"), dict) and not data.get("messages"):
            message = data["data"]
            if message.get("fromMe"):
                logger.debug("whatsapp_own_message_ignored", message_id=message.get("id"))
                return None
            if not message.get("from"):
                return None
            sender = _strip_whatsapp_suffix(message["from"])
            recipient = _strip_whatsapp_suffix(message["to"]) if message.get("to") else None
            return self._message(
                sender,
                message.get("body") or message.get("caption") or "",
                {
                    "messageId": message.get("id"),
                    "messageType": message.get("type"),
                    "pushname": message.get("pushname"),
                    "instanceId": data.get("instanceId"),
                    "toNumber": recipient,
                },
                _epoch_to_datetime(message.get("time")) if message.get("time") else None,
            )

        messages = data.get("messages")
        if isinstance(messages, list) and messages:
            message = messages[0]
            if not message.get("from"):
                return None
            sender = _strip_whatsapp_suffix(str(message["from"]).lstrip("+"))
            content = message.get("body") or message.get("caption") or _cloud_api_content(message)
            phone_number_id = (data.get("metadata") or {}).get("phone_number_id") or "default"
            return self._message(
                sender,
                content,
                {
                    "messageId": message.get("id"),
                    "messageType": message.get("type"),
                    "instanceId": phone_number_id,
                    "toNumber": phone_number_id,
                },
            )

        logger.warning("whatsapp_payload_unrecognized", keys=sorted(data.keys())[:20])
        return None

    async def send(self, channel_config: Optional[Dict[str, Any]], message: OutgoingMessage) -> Dict[str, Any]:
        settings = WhatsAppChannelSettings.from_config(channel_config)
        if settings.provider == "twilio":
            return await self._send_twilio(settings, message)
        if settings.provider == "360dialog":
            return await self._send_360dialog(settings, message)
        return await self._send_ultramsg(settings, message)

    async def _send_ultramsg(self, settings: WhatsAppChannelSettings, message: OutgoingMessage) -> Dict[str, Any]:
        if not settings.instance_id or not settings.api_token:
            raise ProviderSendError("UltraMsg instanceId and token are required", status_code=400, provider="ultramsg")
        recipient = message.channel_user_id
        if "@c.us" not in recipient:
            recipient = f"{recipient}@c.us"
        body: Dict[str, Any] = {
            "token": settings.api_token,
            "to": recipient,
            "body": message.content,
            "priority": 5,
        }
        if message.metadata.get("conversationId"):
            body["referenceId"] = message.metadata["conversationId"]
        async with self._client() as client:
            result = await self._post(
                "ultramsg", client, f"{ULTRAMSG_API_BASE}/{settings.instance_id}/messages/chat", data=body
            )
        if isinstance(result, dict) and result.get("error"):
            error = str(result["error"])
            # stopped instances answer 200 with an error body
            raise ProviderSendError(f"UltraMsg error: {error}", status_code=400, provider="ultramsg")
        return result

    async def _send_twilio(self, settings: WhatsAppChannelSettings, message: OutgoingMessage) -> Dict[str, Any]:
        if not settings.account_sid or not settings.auth_token or not settings.phone_number:
            raise ProviderSendError(
                "Twilio accountSid, authToken and phoneNumber are required", status_code=400, provider="twilio"
            )
        form = {
            "From": f"whatsapp:{settings.phone_number}",
            "To": f"whatsapp:{message.channel_user_id}",
            "Body": message.content,
        }
        async with self._client(auth=(settings.account_sid, settings.auth_token)) as client:
            return await self._post(
                "twilio", client, f"{TWILIO_API_BASE}/Accounts/{settings.account_sid}/Messages.json", data=form
            )

    async def _send_360dialog(self, settings: WhatsAppChannelSettings, message: OutgoingMessage) -> Dict[str, Any]:
        if not settings.phone_number_id or not settings.api_token:
            raise ProviderSendError(
                "phoneNumberId and apiToken are required for 360dialog", status_code=400, provider="360dialog"
            )
        recipient = re.sub(r"\s+", "", message.channel_user_id.lstrip("+"))
        recipient = re.sub(r"@c\.us$", "", recipient)
        body = {
            "recipient_type": "individual",
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "text",
            "text": {"body": message.content},
        }
        async with self._client(headers={"D360-API-KEY": settings.api_token}) as client:
            return await self._post("360dialog", client, f"{DIALOG360_API_BASE}/messages", json=body)


class TelegramAdapter(ChannelAdapter):
    channel_type = ChannelType.TELEGRAM.value

    def normalize(self, payload: Any) -> Optional[IncomingMessage]:
        if not isinstance(payload, dict):
            return None
        message = payload.get("message")
        if not isinstance(message, dict):
            if payload.get("callback_query"):
                logger.debug("telegram_callback_query_ignored", update_id=payload.get("update_id"))
            return None
        sender = message.get("from") or {}
        chat = message.get("chat") or {}
        if "id" not in sender:
            return None
        user_id = str(sender["id"])
        incoming = self._message(
            user_id,
            message.get("text") or "",
            {
                "messageId": message.get("message_id"),
                "updateId": payload.get("update_id"),
                "chatId": chat.get("id"),
                "chatType": chat.get("type"),
                "date": message.get("date"),
                "from": sender,
            },
            _epoch_to_datetime(message.get("date")) if message.get("date") else None,
        )
        incoming.conversation_id = str(chat.get("id", user_id))
        return incoming

    async def send(self, channel_config: Optional[Dict[str, Any]], message: OutgoingMessage) -> Dict[str, Any]:
        config = channel_config or {}
        token = config.get("botToken") or config.get("token")
        if not token:
            raise ProviderSendError("Telegram botToken is required", status_code=400, provider="telegram")
        chat_id = message.metadata.get("chatId") or message.channel_user_id
        body = {
            "chat_id": chat_id,
            "text": message.content,
            "parse_mode": message.metadata.get("parseMode", "Markdown"),
            "disable_web_page_preview": bool(message.metadata.get("disableWebPagePreview", False)),
        }
        if message.metadata.get("replyMarkup"):
            body["reply_markup"] = message.metadata["replyMarkup"]
        async with self._client() as client:
            result = await self._post("telegram", client, f"{TELEGRAM_API_BASE}/bot{token}/sendMessage", json=body)
        if isinstance(result, dict) and result.get("ok") is False:
            raise ProviderSendError(
                f"Telegram error: {result.get('description')}", status_code=400, provider="telegram"
            )
        return result


_ADDRESS_RE = re.compile(r"<([^>]+)>")


def extract_email_address(value: str) -> str:
    match = _ADDRESS_RE.search(value or "")
    return (match.group(1) if match else (value or "")).strip().lower()


class EmailAdapter(ChannelAdapter):
    """Inbound mail webhooks. Replies go out through the email connector tool."""

    channel_type = ChannelType.EMAIL.value

    def normalize(self, payload: Any) -> Optional[IncomingMessage]:
        if not isinstance(payload, dict) or not payload.get("from") or not payload.get("text"):
            return None
        address = extract_email_address(payload["from"])
        return self._message(
            address,
            payload["text"],
            {
                "subject": payload.get("subject"),
                "messageId": payload.get("messageId"),
                "inReplyTo": payload.get("inReplyTo"),
                "html": payload.get("html"),
            },
        )

    async def send(self, channel_config: Optional[Dict[str, Any]], message: OutgoingMessage) -> Dict[str, Any]:
        raise ProviderSendError("email replies are not sent through a channel adapter", status_code=400, provider="email")


class WebChatAdapter(ChannelAdapter):
    """Widget messages. Replies are returned in the HTTP response."""

    channel_type = ChannelType.WEBCHAT.value

    def normalize(self, payload: Any) -> Optional[IncomingMessage]:
        if not isinstance(payload, dict):
            return None
        session_id = payload.get("sessionId") or payload.get("userId")
        text = payload.get("message") if payload.get("message") is not None else payload.get("content")
        if not session_id or text is None:
            return None
        metadata = dict(payload.get("metadata") or {})
        if payload.get("channelId"):
            metadata.setdefault("channelId", payload["channelId"])
        return self._message(str(session_id), str(text), metadata)

    async def send(self, channel_config: Optional[Dict[str, Any]], message: OutgoingMessage) -> Dict[str, Any]:
        return {"delivered": "inline", "content": message.content}


def build_adapters(*, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, ChannelAdapter]:
    return {
        adapter.channel_type: adapter
        for adapter in (
            WhatsAppAdapter(timeout=timeout, transport=transport),
            TelegramAdapter(timeout=timeout, transport=transport),
            EmailAdapter(timeout=timeout, transport=transport),
            WebChatAdapter(timeout=timeout, transport=transport),
        )
    }
