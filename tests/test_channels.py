import json
from urllib.parse import parse_qs

import httpx
import pytest

from switchboard.service.channel_identity import WhatsAppChannelIdentifier, normalize_instance_id
from switchboard.service.channels import (
    EmailAdapter,
    ProviderSendError,
    TelegramAdapter,
    WebChatAdapter,
    WhatsAppAdapter,
    extract_email_address,
    is_status_only_payload,
)
from switchboard.storage.models import OutgoingMessage


def cloud_payload(text="hello", sender="+15551234567", phone_number_id="pn-1", message_id="wamid.1"):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "value": {
                            "metadata": {"phone_number_id": phone_number_id},
                            "messages": [
                                {
                                    "id": message_id,
                                    "from": sender,
                                    "type": "text",
                                    "timestamp": "1700000000",
                                    "text": {"body": text},
                                }
                            ],
                        }
                    }
                ],
            }
        ],
    }


def ultramsg_payload(text="hi", sender="15551234567@c.us", instance="instance123", message_id="u-1"):
    return {
        "event_type": "message_received",
        "instanceId": instance,
        "data": {"id": message_id, "from": sender, "to": "15550001111@c.us", "body": text, "type": "chat"},
    }


class TestWhatsAppNormalization:
    def test_cloud_api_text(self):
        message = WhatsAppAdapter().normalize(cloud_payload())
        assert message.channel_user_id == "15551234567"
        assert message.content == "hello"
        assert message.provider_message_id == "wamid.1"
        assert message.metadata["instanceId"] == "pn-1"
        assert message.metadata["wabaId"] == "waba-1"
        assert message.timestamp.year == 2023

    def test_wrapped_body_is_unwrapped(self):
        message = WhatsAppAdapter().normalize({"body": cloud_payload(text="wrapped")})
        assert message.content == "wrapped"

    def test_status_only_payload(self):
        payload = cloud_payload()
        value = payload["entry"][0]["changes"][0]["value"]
        value.pop("messages")
        value["statuses"] = [{"id": "wamid.1", "status": "delivered"}]
        assert is_status_only_payload(payload)
        assert WhatsAppAdapter().normalize(payload) is None
        assert not is_status_only_payload(cloud_payload())

    def test_twilio_form(self):
        message = WhatsAppAdapter().normalize(
            {
                "MessageSid": "SM1",
                "From": "whatsapp:+15551234567",
                "To": "whatsapp:+15550001111",
                "Body": "yo",
                "NumMedia": "1",
            }
        )
        assert message.channel_user_id == "+15551234567"
        assert message.metadata["messageType"] == "media"
        assert message.metadata["toNumber"] == "+15550001111"

    def test_ultramsg(self):
        message = WhatsAppAdapter().normalize(ultramsg_payload())
        assert message.channel_user_id == "15551234567"
        assert message.metadata["toNumber"] == "15550001111"
        assert message.metadata["instanceId"] == "instance123"

    def test_ultramsg_own_message_ignored(self):
        payload = ultramsg_payload()
        payload["data"]["fromMe"] = True
        assert WhatsAppAdapter().normalize(payload) is None

    def test_unrecognized_payload(self):
        assert WhatsAppAdapter().normalize({"foo": "bar"}) is None
        assert WhatsAppAdapter().normalize("not a dict") is None


class TestOtherNormalization:
    def test_telegram_message(self):
        message = TelegramAdapter().normalize(
            {
                "update_id": 9,
                "message": {
                    "message_id": 77,
                    "from": {"id": 42, "username": "alice"},
                    "chat": {"id": -100, "type": "group"},
                    "date": 1700000000,
                    "text": "hi bot",
                },
            }
        )
        assert message.channel_user_id == "42"
        assert message.conversation_id == "-100"
        assert message.metadata["chatId"] == -100
        assert message.provider_message_id == "77"

    def test_telegram_callback_query_ignored(self):
        assert TelegramAdapter().normalize({"update_id": 1, "callback_query": {"id": "x"}}) is None

    def test_email(self):
        message = EmailAdapter().normalize(
            {"from": "Alice <Alice@Example.com>", "text": "Need help", "subject": "Order", "messageId": "<m1>"}
        )
        assert message.channel_user_id == "alice@example.com"
        assert message.metadata["subject"] == "Order"
        assert extract_email_address("bob@x.io") == "bob@x.io"
        assert EmailAdapter().normalize({"from": "a@b.c"}) is None

    def test_webchat_metadata_and_channel(self):
        message = WebChatAdapter().normalize(
            {"sessionId": "s-1", "message": "hey", "channelId": "ch-1", "metadata": {"flowId": "f"}}
        )
        assert message.channel_user_id == "s-1"
        assert message.metadata == {"flowId": "f", "channelId": "ch-1"}
        assert WebChatAdapter().normalize({"message": "no session"}) is None


class TestSending:
    async def test_ultramsg_send_form(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"sent": "true"})

        adapter = WhatsAppAdapter(transport=httpx.MockTransport(handler))
        await adapter.send(
            {"provider": "ultramsg", "instanceId": "instance9", "token": "tok"},
            OutgoingMessage("15551234567", "hello", {"conversationId": "c1"}),
        )
        assert seen["url"] == "https://api.ultramsg.com/instance9/messages/chat"
        assert seen["form"]["to"] == ["15551234567@c.us"]
        assert seen["form"]["referenceId"] == ["c1"]

    async def test_ultramsg_error_body_is_a_failure(self):
        adapter = WhatsAppAdapter(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"error": "instance stopped"}))
        )
        with pytest.raises(ProviderSendError) as excinfo:
            await adapter.send({"instanceId": "i", "token": "t"}, OutgoingMessage("1", "x"))
        assert excinfo.value.status_code == 400

    async def test_360dialog_send(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.out"}]})

        adapter = WhatsAppAdapter(transport=httpx.MockTransport(handler))
        await adapter.send(
            {"provider": "360dialog", "phoneNumberId": "pn", "apiToken": "key"},
            OutgoingMessage("+1 555 123", "hi"),
        )
        assert seen["headers"]["D360-API-KEY"] == "key"
        assert seen["body"]["to"] == "1555123"
        assert seen["body"]["messaging_product"] == "whatsapp"

    async def test_provider_status_is_carried(self):
        adapter = WhatsAppAdapter(transport=httpx.MockTransport(lambda r: httpx.Response(503, text="busy")))
        with pytest.raises(ProviderSendError) as excinfo:
            await adapter.send(
                {"provider": "twilio", "accountSid": "AC1", "authToken": "t", "phoneNumber": "+1"},
                OutgoingMessage("+2", "x"),
            )
        assert excinfo.value.status_code == 503
        assert excinfo.value.provider == "twilio"

    async def test_network_failure_has_no_status(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        adapter = TelegramAdapter(transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderSendError) as excinfo:
            await adapter.send({"botToken": "abc"}, OutgoingMessage("42", "x"))
        assert excinfo.value.status_code is None

    async def test_telegram_uses_chat_id(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "result": {}})

        adapter = TelegramAdapter(transport=httpx.MockTransport(handler))
        await adapter.send({"botToken": "abc"}, OutgoingMessage("42", "x", {"chatId": -100}))
        assert seen["url"].endswith("/botabc/sendMessage")
        assert seen["body"]["chat_id"] == -100

    async def test_telegram_missing_token(self):
        with pytest.raises(ProviderSendError):
            await TelegramAdapter().send({}, OutgoingMessage("42", "x"))


class TestChannelIdentifier:
    def test_strategies(self, store, seed):
        ultramsg = seed.channel("whatsapp", {"provider": "ultramsg", "instanceId": "instance123"})
        twilio = seed.channel("whatsapp", {"provider": "twilio", "accountSid": "AC9"})
        dialog = seed.channel("whatsapp", {"provider": "360dialog", "phoneNumberId": "pn-7"})
        by_phone = seed.channel("whatsapp", {"provider": "other", "phoneNumber": "+15550001111"})
        identifier = WhatsAppChannelIdentifier(store)

        assert identifier.identify(ultramsg_payload(instance="123")) == ultramsg.id
        assert identifier.identify({"MessageSid": "SM", "AccountSid": "AC9"}) == twilio.id
        assert identifier.identify(cloud_payload(phone_number_id="pn-7")) == dialog.id
        assert identifier.identify({"data": {"to": "15550001111@c.us"}}) == by_phone.id
        assert identifier.identify({"data": {"to": "999@c.us"}}) is None

    def test_normalize_instance_id(self):
        assert normalize_instance_id("Instance42") == "42"
        assert normalize_instance_id(" 42 ") == "42"
