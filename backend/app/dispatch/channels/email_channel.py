"""
email_channel.py — Email delivery channel.

Delivery mechanism:
    • "simulation" — logs the message and reports it delivered (development)
    • "smtp"       — smtplib in a worker thread; implicit TLS on port 465,
                     STARTTLS otherwise

Email is the only channel that carries a subject line.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional

from backend.app.core.errors import DeliveryError
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.models import Channel

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Notification"


class EmailSender(ChannelSender):

    channel = Channel.EMAIL.value

    def __init__(
        self,
        *,
        provider: str = "simulation",
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_address: str = "notifications@localhost",
        timeout_seconds: float = 20.0,
    ) -> None:
        super().__init__(timeout_seconds)
        self.provider = provider
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address

    def _build_message(self, recipient: str, message: str, subject: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject or DEFAULT_SUBJECT
        msg["From"] = self.from_address
        msg["To"] = recipient
        msg.set_content(message)
        return msg

    async def _send(
        self,
        recipient: str,
        message: str,
        subject: Optional[str],
    ) -> Dict[str, Any]:
        if "@" not in recipient:
            raise DeliveryError(self.channel, f"Invalid email address: {recipient}")

        if self.provider == "simulation":
            logger.info(
                "[EMAIL] → %s: Subject='%s' (%d chars)",
                recipient, subject or DEFAULT_SUBJECT, len(message),
            )
            return {"mode": "simulated", "to": recipient}

        if self.provider == "smtp":
            if not self.smtp_host:
                raise DeliveryError(self.channel, "SMTP_HOST is not configured")
            msg = self._build_message(recipient, message, subject)
            await asyncio.to_thread(self._smtp_send, msg)
            logger.info("[EMAIL/SMTP] Sent to %s via %s", recipient, self.smtp_host)
            return {"mode": "smtp", "to": recipient, "message_id": msg.get("Message-ID")}

        raise DeliveryError(self.channel, f"Unknown email provider: {self.provider}")

    def _smtp_send(self, msg: EmailMessage) -> None:
        try:
            if self.smtp_port == 465:
                server: smtplib.SMTP = smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds,
                )
            else:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds)
            with server:
                if self.smtp_port != 465:
                    server.starttls()
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(self.channel, f"SMTP delivery failed: {exc}") from exc
