"""
SMTP Transport — sends each notification as one email via aiosmtplib.

HTML bodies go out as multipart/alternative with a generated plain-text
part; plain bodies go out as text/plain. SMTP rejections and connection
errors come back as failed DeliveryResults carrying the server's reason.
"""
from __future__ import annotations

import uuid
import structlog
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import aiosmtplib

from models.schemas import DeliveryResult
from transport.base import Transport, TransportError, html_to_plain, looks_like_html

logger = structlog.get_logger()


class SmtpTransport(Transport):
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        start_tls: bool = True,
        from_email: str = "no-reply@example.com",
        from_name: str = "",
    ):
        super().__init__()
        if not host:
            raise TransportError("SMTP host is required", transport=self.name)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.start_tls = start_tls
        self.from_email = from_email
        self.from_name = from_name
        self._domain = from_email.rsplit("@", 1)[-1] if "@" in from_email else "localhost"

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{self._domain}>"
        if looks_like_html(body):
            msg.set_content(html_to_plain(body))
            msg.add_alternative(body, subtype="html")
        else:
            msg.set_content(body)
        return msg

    async def deliver(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        msg = self.build_message(recipient, subject, body)
        try:
            errors, response = await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.start_tls,
            )
        except aiosmtplib.SMTPException as e:
            logger.warning("smtp_delivery_failed", host=self.host, error=str(e))
            return DeliveryResult.failure(f"SMTP error: {e}")
        except OSError as e:
            logger.warning("smtp_connection_failed", host=self.host, error=str(e))
            return DeliveryResult.failure(f"SMTP connection error: {e}")

        if errors:
            refused = "; ".join(f"{addr}: {resp.code} {resp.message}" for addr, resp in errors.items())
            return DeliveryResult.failure(f"Recipient refused: {refused}")

        return DeliveryResult.success(msg["Message-ID"])

    async def health_check(self) -> dict[str, Any]:
        return {
            **await super().health_check(),
            "host": self.host,
            "port": self.port,
        }
