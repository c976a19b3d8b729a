from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from switchboard.logging import get_logger
from switchboard.service.channels import cloud_api_value, unwrap_payload
from switchboard.service.errors import ChannelNotIdentified
from switchboard.storage.models import ChannelConfig, ChannelType

logger = get_logger(__name__)

_INSTANCE_PREFIX = re.compile(r"^instance", re.IGNORECASE)


class ChannelConfigSource(Protocol):
    def list_channel_configs(self, channel_type: str, *, active_only: bool = True) -> List[ChannelConfig]:
        ...


def normalize_instance_id(value: Any) -> str:
    return _INSTANCE_PREFIX.sub("", str(value).strip())


def _is_ultramsg(channel: ChannelConfig) -> bool:
    return (channel.config.get("provider") or "ultramsg").lower() == "ultramsg"


def _provider(channel: ChannelConfig) -> str:
    return (channel.config.get("provider") or "").lower()


class WhatsAppChannelIdentifier:
    """Match a WhatsApp webhook to one configured channel.

    Strategies run in order and the first hit wins: UltraMsg instance id
    (exact, then ignoring the ``instance`` prefix), Twilio account sid,
    360dialog phone number id, and finally the receiving phone number.
    """

    def __init__(self, store: ChannelConfigSource) -> None:
        self.store = store
        self.strategies: List[Tuple[str, Callable[[Dict[str, Any], List[ChannelConfig]], Optional[str]]]] = [
            ("instance_id_exact", self._by_instance_exact),
            ("instance_id_normalized", self._by_instance_normalized),
            ("account_sid", self._by_account_sid),
            ("phone_number_id", self._by_phone_number_id),
            ("phone_number", self._by_phone_number),
        ]

    def identify_or_raise(self, payload: Any) -> str:
        data = unwrap_payload(payload)
        channels = self.store.list_channel_configs(ChannelType.WHATSAPP.value)
        for name, strategy in self.strategies:
            channel_id = strategy(data, channels)
            if channel_id:
                logger.info("whatsapp_channel_identified", strategy=name, channel_id=channel_id)
                return channel_id
        raise ChannelNotIdentified(
            "No configured WhatsApp channel matches the webhook",
            detail={"candidates": len(channels)},
        )

    def identify(self, payload: Any) -> Optional[str]:
        try:
            return self.identify_or_raise(payload)
        except ChannelNotIdentified as exc:
            logger.warning("whatsapp_channel_not_identified", **exc.detail)
        except Exception as exc:
            logger.error("whatsapp_channel_lookup_failed", error=str(exc))
        return None

    @staticmethod
    def _by_instance_exact(data: Dict[str, Any], channels: List[ChannelConfig]) -> Optional[str]:
        if not data.get("instanceId"):
            return None
        raw = str(data["instanceId"]).strip()
        wanted = {raw, normalize_instance_id(raw), f"instance{normalize_instance_id(raw)}"}
        for channel in channels:
            if _is_ultramsg(channel) and str(channel.config.get("instanceId") or "") in wanted:
                return channel.id
        return None

    @staticmethod
    def _by_instance_normalized(data: Dict[str, Any], channels: List[ChannelConfig]) -> Optional[str]:
        if not data.get("instanceId"):
            return None
        wanted = normalize_instance_id(data["instanceId"])
        for channel in channels:
            stored = channel.config.get("instanceId")
            if _is_ultramsg(channel) and stored and normalize_instance_id(stored) == wanted:
                return channel.id
        return None

    @staticmethod
    def _by_account_sid(data: Dict[str, Any], channels: List[ChannelConfig]) -> Optional[str]:
        sid = data.get("AccountSid")
        if not sid:
            return None
        for channel in channels:
            if _provider(channel) == "twilio" and channel.config.get("accountSid") == sid:
                return channel.id
        return None

    @staticmethod
    def _by_phone_number_id(data: Dict[str, Any], channels: List[ChannelConfig]) -> Optional[str]:
        if data.get("object") != "whatsapp_business_account" or not data.get("entry"):
            return None
        value = cloud_api_value(data)
        phone_number_id = (value.get("metadata") or {}).get("phone_number_id") or (data["entry"][0] or {}).get("id")
        if not phone_number_id:
            return None
        for channel in channels:
            if _provider(channel) == "360dialog" and str(channel.config.get("phoneNumberId")) == str(phone_number_id):
                return channel.id
        return None

    @staticmethod
    def _by_phone_number(data: Dict[str, Any], channels: List[ChannelConfig]) -> Optional[str]:
        phone: Optional[str] = None
        inner = data.get("data")
        if isinstance(inner, dict) and inner.get("to"):
            phone = str(inner["to"]).split("@", 1)[0]
        elif data.get("To"):
            phone = str(data["To"]).replace("whatsapp:", "").lstrip("+")
        if not phone:
            return None
        digits = re.sub(r"\D", "", phone)
        wanted = {phone, digits, f"+{digits}"}
        for channel in channels:
            if str(channel.config.get("phoneNumber") or "") in wanted:
                return channel.id
        return None
