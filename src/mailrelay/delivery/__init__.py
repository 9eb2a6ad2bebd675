"""Outbound transports: webhook POSTs and SMTP sends."""

from mailrelay.delivery.smtp import SmtpSender, build_message
from mailrelay.delivery.webhook import WebhookResponse, WebhookSender

__all__ = [
    "SmtpSender",
    "WebhookResponse",
    "WebhookSender",
    "build_message",
]
