"""
Dunning Notifier -- Delivery Adapters

One adapter per channel, each a plain request/response call that returns a
DeliveryResult instead of raising for transport problems.  Timeouts are
bounded by the adapter; there is no retry here (the next scheduled cycle
retries anything whose marker was not set).

  ChatAdapter   WhatsApp through an Evolution-API style gateway (httpx)
  EmailAdapter  SMTP relay, multipart/alternative HTML + plain text
"""

from __future__ import annotations

import logging
import re
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from typing import Callable, Optional, Protocol

import httpx

from .config import ChatSettings, SenderInfo, SMTPSettings
from .exceptions import DeliveryError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one send: success, or failure with a reason."""

    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def ok(cls, message_id: Optional[str] = None) -> DeliveryResult:
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, reason: str) -> DeliveryResult:
        return cls(success=False, error=reason)


class ChatDeliveryAdapter(Protocol):
    def send(self, destination: str, text: str) -> DeliveryResult:
        ...


class EmailDeliveryAdapter(Protocol):
    def send(
        self,
        destination: str,
        display_name: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> DeliveryResult:
        ...


# ===========================================================================
# Chat (WhatsApp)
# ===========================================================================

def format_phone_number(raw: str, country_code: str = "55") -> str:
    """Normalize a phone number to digits with the country prefix.

    "(11) 98765-4321" -> "5511987654321".  Numbers that already carry the
    prefix are kept; numbers too short to be valid are returned as digits
    with a warning.
    """
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith(country_code) and len(digits) >= 12:
        return digits
    if len(digits) >= 10:
        return country_code + digits
    logger.warning("Phone number %r looks too short; sending as %r", raw, digits)
    return digits


class ChatAdapter:
    """Sends text messages via ``POST {base_url}/message/sendText/{instance}``.

    Args:
        settings: Gateway URL, API key, instance name and timeout.
        client: Optional pre-built httpx.Client (tests pass one backed by
            httpx.MockTransport).
    """

    def __init__(self, settings: ChatSettings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self._client = client or httpx.Client(timeout=settings.timeout_seconds)

    @property
    def endpoint(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/message/sendText/{self.settings.instance_name}"

    def send(self, destination: str, text: str) -> DeliveryResult:
        """Send ``text`` to ``destination``.

        Raises:
            DeliveryError: If the gateway URL or API key is missing.
        """
        if not self.settings.base_url or not self.settings.api_key:
            raise DeliveryError("WhatsApp gateway URL or API key not configured")

        number = format_phone_number(destination, self.settings.country_code)
        if not number:
            return DeliveryResult.failed(f"Invalid phone number: {destination!r}")

        try:
            response = self._client.post(
                self.endpoint,
                json={"number": number, "text": text},
                headers={"apikey": self.settings.api_key},
                timeout=self.settings.timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("WhatsApp gateway HTTP error for %s: %s", number, e)
            return DeliveryResult.failed(
                f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            )
        except httpx.RequestError as e:
            logger.error("WhatsApp gateway request error for %s: %s", number, e)
            return DeliveryResult.failed(f"Request error: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = None                  # 2xx without a JSON body
        message_id = None
        if isinstance(payload, dict):
            message_id = (payload.get("key") or {}).get("id")

        logger.info("WhatsApp message sent to %s", number)
        return DeliveryResult.ok(message_id)

    def close(self) -> None:
        self._client.close()


# ===========================================================================
# E-mail (SMTP)
# ===========================================================================

def build_email_message(
    sender: SenderInfo,
    destination: str,
    display_name: str,
    subject: str,
    html_body: str,
    text_body: str,
) -> MIMEMultipart:
    """Build a multipart/alternative message ready for SMTP sending."""
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((sender.name, sender.email))
    msg["To"] = formataddr((display_name, destination)) if display_name else destination
    msg["Subject"] = subject
    msg["Date"] = formatdate(usegmt=True)

    # plain first; clients show the last part they understand
    msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


class EmailAdapter:
    """Sends one message per call through an SMTP relay.

    Args:
        settings: Host, port, TLS, credentials and timeout.
        sender: FROM identity.
        smtp_factory: Callable returning an ``smtplib.SMTP``-like context
            manager; tests substitute a fake.
    """

    def __init__(
        self,
        settings: SMTPSettings,
        sender: SenderInfo,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ):
        self.settings = settings
        self.sender = sender
        self._smtp_factory = smtp_factory

    def send(
        self,
        destination: str,
        display_name: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> DeliveryResult:
        if not destination or "@" not in destination:
            return DeliveryResult.failed(f"Invalid e-mail address: {destination!r}")

        msg = build_email_message(
            self.sender, destination, display_name, subject, html_body, text_body
        )

        try:
            with self._smtp_factory(
                self.settings.host, self.settings.port, timeout=self.settings.timeout_seconds
            ) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                server.sendmail(self.sender.email, [destination], msg.as_string())
        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP authentication failed for %s", self.settings.username)
            return DeliveryResult.failed("SMTP authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            return DeliveryResult.failed(f"Recipient refused: {e}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP error sending to %s: %s", destination, e)
            return DeliveryResult.failed(f"Send failed - {e}")

        logger.info("E-mail sent to %s", destination)
        return DeliveryResult.ok()
