"""Outgoing mail over SMTP.

Used by forwarding endpoints (email, email_group) and by the reply API.
smtplib is blocking, so each send runs in a worker thread.

Usage:
    from mailrelay.delivery.smtp import SmtpSender, build_message

    sender = SmtpSender(config.smtp)
    message = build_message(
        from_address="support@example.com",
        to=["alice@example.com"],
        subject="Re: Order 1234",
        text_body="Thanks, shipped today.",
    )
    message_id = await sender.send(message)
"""

from __future__ import annotations

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid

from mailrelay.config_schema import SmtpConfig
from mailrelay.core.errors import DeliveryError
from mailrelay.core.logging import get_logger

logger = get_logger(__name__)


def build_message(
    from_address: str,
    to: list[str],
    subject: str,
    text_body: str | None = None,
    html_body: str | None = None,
    cc: list[str] | None = None,
    in_reply_to: str | None = None,
    references: list[str] | None = None,
    extra_headers: dict[str, str] | None = None,
) -> MIMEMultipart:
    """Build a multipart/alternative message with a fresh Message-ID.

    Message-IDs in `in_reply_to` and `references` are given without angle
    brackets.
    """
    msg = MIMEMultipart("alternative")
    msg["From"] = from_address
    msg["To"] = ", ".join(to)
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=False)

    domain = from_address.rsplit("@", 1)[-1].strip(" >") or None
    msg["Message-ID"] = make_msgid(domain=domain)

    if in_reply_to:
        msg["In-Reply-To"] = f"<{in_reply_to}>"
        chain = [*(references or [])]
        if in_reply_to not in chain:
            chain.append(in_reply_to)
        msg["References"] = " ".join(f"<{ref}>" for ref in chain)

    for name, value in (extra_headers or {}).items():
        msg[name] = value

    msg.attach(MIMEText(text_body or "", "plain", "utf-8"))
    if html_body:
        msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


class SmtpSender:
    """Sends prepared messages through the configured SMTP server."""

    def __init__(self, config: SmtpConfig):
        self.config = config

    async def send(self, message: MIMEMultipart) -> str:
        """Send a message to all of its To and Cc recipients.

        Returns:
            The message's Message-ID, angle brackets stripped

        Raises:
            DeliveryError: If the SMTP conversation fails
        """
        recipients = [
            addr.strip()
            for header in ("To", "Cc")
            for addr in (message.get(header) or "").split(",")
            if addr.strip()
        ]
        if not recipients:
            raise DeliveryError("Message has no recipients")

        await asyncio.to_thread(self._send_sync, message, recipients)

        message_id = message["Message-ID"].strip("<> ")
        logger.info(
            "smtp_message_sent",
            message_id=message_id,
            recipients=len(recipients),
            host=self.config.host,
        )
        return message_id

    def _send_sync(self, message: MIMEMultipart, recipients: list[str]) -> None:
        try:
            with smtplib.SMTP(
                self.config.host, self.config.port, timeout=self.config.timeout_seconds
            ) as server:
                if self.config.use_starttls:
                    server.starttls()
                if self.config.username:
                    server.login(self.config.username, self.config.password or "")
                server.sendmail(message["From"], recipients, message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "smtp_send_failed",
                host=self.config.host,
                port=self.config.port,
                error=str(e),
            )
            raise DeliveryError(
                f"SMTP send via {self.config.host}:{self.config.port} failed: {e}",
                recipients=recipients,
            ) from e
