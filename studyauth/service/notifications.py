from __future__ import annotations

import asyncio
import smtplib
import ssl
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from studyauth.logging import get_logger, mask_destination
from studyauth.storage.models import OTPPurpose

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationSender(Protocol):
    async def send_sms(self, destination: str, message: str) -> DeliveryResult: ...

    async def send_email(
        self, destination: str, subject: str, body: str
    ) -> DeliveryResult: ...


_PURPOSE_LABELS = {
    OTPPurpose.LOGIN.value: "sign in",
    OTPPurpose.PASSWORD_RESET.value: "reset your password",
    OTPPurpose.EMAIL_VERIFICATION.value: "verify your email address",
}


def render_otp_message(
    purpose: str, code: str, ttl_seconds: int, *, app_name: str
) -> tuple[str, str]:
    """Subject and body for a passcode message (the SMS uses the body only)."""
    action = _PURPOSE_LABELS.get(purpose, "continue")
    minutes = max(1, ttl_seconds // 60)
    subject = f"Your {app_name} verification code"
    body = (
        f"{code} is your {app_name} code to {action}. "
        f"It expires in {minutes} minute{'s' if minutes != 1 else ''}. "
        "Do not share it with anyone."
    )
    return subject, body


def render_password_changed_notice(*, app_name: str) -> tuple[str, str]:
    subject = f"Your {app_name} password was changed"
    body = (
        f"The password for your {app_name} account was just reset and all "
        "existing sessions were signed out. If this was not you, contact support."
    )
    return subject, body


class EmailSender:
    """SMTP delivery.

    Without an SMTP host the message is logged in dev mode and reported as
    undelivered otherwise.
    """

    provider = "smtp"

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "StudyAuth",
        timeout: float = 15.0,
        dev_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send(self, to_email: str, subject: str, body: str) -> DeliveryResult:
        if not self.is_configured:
            if not self.dev_mode:
                logger.error("email_not_configured", to=mask_destination(to_email))
                return DeliveryResult(
                    delivered=False, provider=self.provider, error="not_configured"
                )
            message_id = f"dev-{uuid.uuid4()}"
            logger.info(
                "email_dev_mode",
                to=mask_destination(to_email),
                subject=subject,
                body_preview=body[:200],
                message_id=message_id,
            )
            return DeliveryResult(delivered=True, provider="log", message_id=message_id)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        message_id = make_msgid(domain=self.from_email.split("@")[-1])
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(body, "plain"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=mask_destination(to_email), error=str(exc))
            return DeliveryResult(delivered=False, provider=self.provider, error="auth_failed")
        except TimeoutError:
            raise
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=mask_destination(to_email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryResult(delivered=False, provider=self.provider, error="send_failed")

        logger.info("email_sent", to=mask_destination(to_email), message_id=message_id)
        return DeliveryResult(delivered=True, provider=self.provider, message_id=message_id)

    async def send_email(self, destination: str, subject: str, body: str) -> DeliveryResult:
        return await asyncio.to_thread(self._send, destination, subject, body)


class SmsGatewaySender:
    """HTTP SMS gateway: ``GET {base}/{api_key}/SMS/{number}/{message}/{sender}``.

    The gateway answers ``{"Status": "Success", "Details": "<message id>"}``.
    Without an API key the message is logged in dev mode and reported as
    undelivered otherwise.
    """

    provider = "sms_gateway"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        sender_id: str = "STDYAU",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        dev_mode: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._transport = transport
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send_sms(self, destination: str, message: str) -> DeliveryResult:
        if not self.is_configured:
            if not self.dev_mode:
                logger.error("sms_not_configured", to=mask_destination(destination))
                return DeliveryResult(
                    delivered=False, provider=self.provider, error="not_configured"
                )
            message_id = f"dev-{uuid.uuid4()}"
            logger.info(
                "sms_dev_mode",
                to=mask_destination(destination),
                body_preview=message[:200],
                message_id=message_id,
            )
            return DeliveryResult(delivered=True, provider="log", message_id=message_id)

        number = destination.lstrip("+")
        url = (
            f"{self.base_url}/{self.api_key}/SMS/{quote(number, safe='')}/"
            f"{quote(message, safe='')}/{quote(self.sender_id, safe='')}"
        )
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as exc:
            raise TimeoutError("sms gateway timed out") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "sms_send_failed",
                to=mask_destination(destination),
                error_type=type(exc).__name__,
            )
            return DeliveryResult(delivered=False, provider=self.provider, error="send_failed")

        if not isinstance(payload, dict) or payload.get("Status") != "Success":
            details = payload.get("Details") if isinstance(payload, dict) else None
            logger.error(
                "sms_gateway_rejected", to=mask_destination(destination), details=details
            )
            return DeliveryResult(
                delivered=False, provider=self.provider, error=str(details or "rejected")
            )
        message_id = str(payload.get("Details") or "")
        logger.info("sms_sent", to=mask_destination(destination), message_id=message_id)
        return DeliveryResult(delivered=True, provider=self.provider, message_id=message_id)


class NotificationService:
    """Routes SMS and email to their providers."""

    def __init__(self, email: EmailSender, sms: SmsGatewaySender) -> None:
        self.email = email
        self.sms = sms

    async def send_sms(self, destination: str, message: str) -> DeliveryResult:
        return await self.sms.send_sms(destination, message)

    async def send_email(self, destination: str, subject: str, body: str) -> DeliveryResult:
        return await self.email.send_email(destination, subject, body)
