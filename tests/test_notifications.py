"""Message rendering plus the SMTP and SMS gateway senders."""

import smtplib
from urllib.parse import unquote

import httpx
import pytest

from studyauth.service.notifications import (
    EmailSender,
    NotificationService,
    SmsGatewaySender,
    render_otp_message,
    render_password_changed_notice,
)


class TestRendering:
    def test_otp_message_leads_with_code(self):
        subject, body = render_otp_message("login", "042317", 300, app_name="StudyAuth")
        assert "StudyAuth" in subject
        assert body.startswith("042317 ")
        assert "sign in" in body
        assert "5 minutes" in body

    def test_single_minute(self):
        _, body = render_otp_message("password_reset", "123456", 60, app_name="StudyAuth")
        assert "1 minute." in body
        assert "reset your password" in body

    def test_password_notice_mentions_sign_out(self):
        subject, body = render_password_changed_notice(app_name="StudyAuth")
        assert "password" in subject
        assert "signed out" in body


def _gateway(handler, **kwargs):
    return SmsGatewaySender(
        base_url="https://sms.example.test/API/V1/",
        api_key=kwargs.pop("api_key", "key-123"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestSmsGateway:
    async def test_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"Status": "Success", "Details": "abc-1"})

        result = await _gateway(handler).send_sms("+919876543210", "123456 is your code")

        assert result.delivered is True
        assert result.message_id == "abc-1"
        path = unquote(seen[0].url.path)
        assert path.startswith("/API/V1/key-123/SMS/919876543210/")
        assert path.endswith("/STDYAU")

    async def test_gateway_rejection(self):
        def handler(request):
            return httpx.Response(200, json={"Status": "Error", "Details": "Invalid Number"})

        result = await _gateway(handler).send_sms("+919876543210", "hi")
        assert result.delivered is False
        assert result.error == "Invalid Number"

    async def test_http_error(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        result = await _gateway(handler).send_sms("+919876543210", "hi")
        assert result.delivered is False
        assert result.error == "send_failed"

    async def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="OK")

        result = await _gateway(handler).send_sms("+919876543210", "hi")
        assert result.delivered is False

    async def test_timeout_propagates(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TimeoutError):
            await _gateway(handler).send_sms("+919876543210", "hi")

    async def test_dev_mode_without_key(self):
        def handler(request):
            raise AssertionError("no request expected")

        sender = _gateway(handler, api_key=None, dev_mode=True)
        result = await sender.send_sms("+919876543210", "hi")
        assert result.delivered is True
        assert result.provider == "log"

    async def test_missing_key_is_undelivered(self):
        def handler(request):
            raise AssertionError("no request expected")

        result = await _gateway(handler, api_key=None).send_sms("+919876543210", "hi")
        assert result.delivered is False
        assert result.provider == "sms_gateway"
        assert result.error == "not_configured"


class FakeSMTP:
    instances = []
    fail_login = False

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sent = []
        self.tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr("studyauth.service.notifications.smtplib.SMTP", FakeSMTP)
    return FakeSMTP


class TestEmailSender:
    def _sender(self, **kwargs):
        return EmailSender(
            smtp_host="smtp.example.test",
            smtp_user="mailer@example.test",
            smtp_password="pw",
            **kwargs,
        )

    async def test_sends_over_starttls(self, fake_smtp):
        result = await self._sender().send_email("bob@example.com", "Hello", "123456 is your code")

        assert result.delivered is True
        assert result.message_id
        server = fake_smtp.instances[0]
        assert server.tls is True
        from_addr, to_addr, message = server.sent[0]
        assert from_addr == "mailer@example.test"
        assert to_addr == "bob@example.com"
        assert "Subject: Hello" in message

    async def test_auth_failure_is_reported(self, fake_smtp):
        fake_smtp.fail_login = True
        result = await self._sender().send_email("bob@example.com", "Hello", "body")
        assert result.delivered is False
        assert result.error == "auth_failed"

    async def test_dev_mode_without_host(self, fake_smtp):
        result = await EmailSender(dev_mode=True).send_email("bob@example.com", "Hello", "body")
        assert result.delivered is True
        assert result.provider == "log"
        assert fake_smtp.instances == []

    async def test_missing_host_is_undelivered(self, fake_smtp):
        result = await EmailSender().send_email("bob@example.com", "Hello", "body")
        assert result.delivered is False
        assert result.error == "not_configured"
        assert fake_smtp.instances == []


async def test_service_routes_by_channel(fake_smtp):
    def handler(request):
        return httpx.Response(200, json={"Status": "Success", "Details": "sms-1"})

    service = NotificationService(
        EmailSender(smtp_host="smtp.example.test", from_email="noreply@example.test"),
        _gateway(handler),
    )

    sms = await service.send_sms("+919876543210", "hi")
    email = await service.send_email("bob@example.com", "Hi", "body")

    assert sms.provider == "sms_gateway"
    assert email.provider == "smtp"
