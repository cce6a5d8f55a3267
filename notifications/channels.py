from __future__ import annotations

import html
import json
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Callable, Dict, List, Optional

import requests

from .config import CHANNEL_TIMEOUT, TELEGRAM_API_URL, TEST_MESSAGE, VALID_CHANNELS
from .models import ChannelResult, NotificationMessage, Recipient

LOGGER = logging.getLogger(__name__)


class NotificationDeliveryError(Exception):
    """A channel could not deliver a message."""


# ------------------------------- Destinations -------------------------------
def resolve_email_address(recipient: Optional[Recipient], settings: Dict) -> Optional[str]:
    if recipient and recipient.email:
        return recipient.email
    return settings.get("email_address") or None


def resolve_telegram_chat_id(recipient: Optional[Recipient], settings: Dict) -> Optional[str]:
    if recipient and recipient.telegram_chat_id:
        return recipient.telegram_chat_id
    return settings.get("telegram_chat_id") or None


def is_slack_webhook_locked() -> bool:
    return bool(os.getenv("SLACK_WEBHOOK_URL"))


def resolve_slack_webhook_url(settings: Dict) -> Optional[str]:
    return os.getenv("SLACK_WEBHOOK_URL") or settings.get("slack_webhook_url") or None


def slack_text(recipient: Optional[Recipient], text: str) -> str:
    if recipient and recipient.slack_user_id:
        return f"<@{recipient.slack_user_id}> {text}"
    return text


# ------------------------------- Senders -------------------------------
def _smtp_connection():
    host = os.getenv("SMTP_HOST")
    port = int(os.getenv("SMTP_PORT", "587"))
    username = os.getenv("SMTP_USERNAME")
    password = os.getenv("SMTP_PASSWORD")
    use_tls = os.getenv("SMTP_USE_TLS", "1") not in {"0", "false", "False"}

    if not host:
        return None

    server = smtplib.SMTP(host, port, timeout=CHANNEL_TIMEOUT)
    try:
        if use_tls:
            server.starttls()
        if username and password:
            server.login(username, password)
    except Exception:
        server.quit()
        raise
    return server


def send_email(to_address: str, message: NotificationMessage) -> None:
    """Send the notification via SMTP, or log it when no SMTP host is configured."""
    server = _smtp_connection()
    if server is None:
        LOGGER.info("Email to %s: %s\n%s", to_address, message.subject, message.body_text)
        return

    sender = os.getenv("NOTIFY_FROM_EMAIL") or os.getenv("SMTP_DEFAULT_SENDER")
    if not sender:
        server.quit()
        raise NotificationDeliveryError("NOTIFY_FROM_EMAIL not configured")

    email = EmailMessage()
    email["Subject"] = message.subject
    email["From"] = sender
    email["To"] = to_address
    email.set_content(message.body_text)

    with server:
        server.send_message(email)
    LOGGER.info("Sent email notification '%s' to %s", message.subject, to_address)


def send_telegram(bot_token: str, chat_id: str, text: str) -> None:
    """Send the notification through the Telegram Bot API."""
    payload = {"chat_id": chat_id, "text": html.escape(text, quote=False), "parse_mode": "HTML"}
    headers = {"Content-Type": "application/json"}

    resp = requests.post(
        TELEGRAM_API_URL.format(token=bot_token),
        headers=headers,
        data=json.dumps(payload),
        timeout=CHANNEL_TIMEOUT,
    )
    if not resp.ok:
        raise NotificationDeliveryError(f"Telegram API error: {resp.text}")
    LOGGER.info("Sent telegram notification to chat %s", chat_id)


def send_slack(webhook_url: str, text: str, channel: Optional[str] = None) -> None:
    """Send the notification to a Slack incoming webhook."""
    payload: Dict[str, str] = {"text": text}
    if channel:
        payload["channel"] = channel
    headers = {"Content-Type": "application/json"}

    resp = requests.post(webhook_url, headers=headers, data=json.dumps(payload), timeout=CHANNEL_TIMEOUT)
    if not resp.ok:
        raise NotificationDeliveryError(f"Slack webhook error: {resp.status_code} {resp.reason}")
    LOGGER.info("Sent slack notification%s", f" to {channel}" if channel else "")


# ------------------------------- Dispatch -------------------------------
def _deliver_email(recipient: Optional[Recipient], message: NotificationMessage, settings: Dict) -> None:
    to_address = resolve_email_address(recipient, settings)
    if not to_address:
        raise NotificationDeliveryError("Email address not configured")
    send_email(to_address, message)


def _deliver_telegram(recipient: Optional[Recipient], message: NotificationMessage, settings: Dict) -> None:
    bot_token = settings.get("telegram_bot_token")
    if not bot_token:
        raise NotificationDeliveryError("Telegram bot token not configured")
    chat_id = resolve_telegram_chat_id(recipient, settings)
    if not chat_id:
        raise NotificationDeliveryError("Telegram chat ID not configured")
    send_telegram(bot_token, chat_id, message.body_text)


def _deliver_slack(recipient: Optional[Recipient], message: NotificationMessage, settings: Dict) -> None:
    webhook_url = resolve_slack_webhook_url(settings)
    if not webhook_url:
        raise NotificationDeliveryError("Slack webhook not configured (set SLACK_WEBHOOK_URL env var)")
    send_slack(webhook_url, slack_text(recipient, message.body_text), settings.get("slack_channel") or None)


CHANNEL_HANDLERS: Dict[str, Callable[[Optional[Recipient], NotificationMessage, Dict], None]] = {
    "email": _deliver_email,
    "telegram": _deliver_telegram,
    "slack": _deliver_slack,
}


def dispatch(recipient: Optional[Recipient], message: NotificationMessage, settings: Dict) -> List[ChannelResult]:
    """Send the message on every enabled channel; each channel fails on its own."""
    results: List[ChannelResult] = []
    for channel in VALID_CHANNELS:
        if not settings.get(f"{channel}_enabled"):
            continue
        try:
            CHANNEL_HANDLERS[channel](recipient, message, settings)
        except Exception as exc:
            LOGGER.warning("Failed to send %s notification '%s': %s", channel, message.subject, exc)
            results.append(ChannelResult(channel=channel, success=False, error=str(exc)))
        else:
            results.append(ChannelResult(channel=channel, success=True))
    return results


def send_test_notification(channel: str, settings: Dict) -> Dict:
    """Send a fixed test message to the globally configured destination."""
    if channel not in CHANNEL_HANDLERS:
        raise ValueError(f"Unknown notification channel: {channel}")

    message = NotificationMessage(subject="Test", body_text=TEST_MESSAGE, category="test")
    try:
        if channel == "telegram" and not settings.get("telegram_chat_id"):
            raise NotificationDeliveryError("Telegram not fully configured")
        CHANNEL_HANDLERS[channel](None, message, settings)
    except Exception as exc:
        return {"success": False, "error": str(exc)}
    return {"success": True}
