import json
import smtplib

import httpx
import pytest

from farmauth.service.dispatch import (
    ChannelDispatcher,
    EmailDispatcher,
    LogDispatcher,
    SmsDispatcher,
)
from farmauth.service.email import EmailService
from farmauth.service.errors import DispatchFailure
from farmauth.storage.models import Channel


async def test_sms_posts_to_gateway():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"queued": True})

    dispatcher = SmsDispatcher(
        "https://sms.example/send",
        api_key="key-123",
        sender_id="FARMCN",
        transport=httpx.MockTransport(handler),
    )
    await dispatcher.send(Channel.PHONE, "+254700000005", "Your code is 4242")

    assert len(seen) == 1
    request = seen[0]
    assert request.headers["Authorization"] == "Bearer key-123"
    assert json.loads(request.content) == {
        "to": "+254700000005",
        "from": "FARMCN",
        "message": "Your code is 4242",
    }


async def test_sms_gateway_error_is_dispatch_failure():
    dispatcher = SmsDispatcher(
        "https://sms.example/send",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(DispatchFailure) as exc_info:
        await dispatcher.send(Channel.PHONE, "+254700000005", "hi")
    assert exc_info.value.detail == {"status_code": 503}


async def test_sms_unreachable_gateway():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = SmsDispatcher(
        "https://sms.example/send", transport=httpx.MockTransport(handler)
    )
    with pytest.raises(DispatchFailure):
        await dispatcher.send(Channel.PHONE, "+254700000005", "hi")


async def test_sms_refuses_email_channel():
    dispatcher = SmsDispatcher("https://sms.example/send")
    with pytest.raises(DispatchFailure):
        await dispatcher.send(Channel.EMAIL, "a@example.com", "hi")


async def test_email_dev_mode_succeeds():
    dispatcher = EmailDispatcher(EmailService(), subject="Your code")
    await dispatcher.send(Channel.EMAIL, "farmer@example.com", "Your code is 4242")


async def test_email_smtp_failure_is_dispatch_failure(monkeypatch):
    class RefusingSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "service not available")

    monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
    service = EmailService(smtp_host="smtp.example", from_email="noreply@example.com")
    dispatcher = EmailDispatcher(service, subject="Your code")

    with pytest.raises(DispatchFailure):
        await dispatcher.send(Channel.EMAIL, "farmer@example.com", "Your code is 4242")


async def test_log_dispatcher_keeps_no_history():
    dispatcher = LogDispatcher()
    for n in range(1000):
        await dispatcher.send(Channel.PHONE, "+254700000005", f"code {n:04d}")
    assert vars(dispatcher) == {}


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    async def send(self, channel, identifier, message):
        self.sent.append((channel, identifier, message))


async def test_channel_router():
    phone = RecordingDispatcher()
    router = ChannelDispatcher({Channel.PHONE: phone})

    await router.send(Channel.PHONE, "+254700000005", "hello")
    assert phone.sent == [(Channel.PHONE, "+254700000005", "hello")]

    with pytest.raises(DispatchFailure):
        await router.send(Channel.EMAIL, "farmer@example.com", "hello")
