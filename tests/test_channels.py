import json

import pytest
import requests

from notifications import channels
from notifications.models import NotificationMessage, Recipient

MESSAGE = NotificationMessage(subject="Reminder: Acme", body_text="Follow up with Acme")


def test_destination_precedence_prefers_assignee():
    settings = {"email_address": "team@example.com", "telegram_chat_id": "100"}
    assignee = Recipient(name="Dana", email="dana@example.com", telegram_chat_id="200")

    assert channels.resolve_email_address(assignee, settings) == "dana@example.com"
    assert channels.resolve_telegram_chat_id(assignee, settings) == "200"
    assert channels.resolve_email_address(Recipient(name="Lee"), settings) == "team@example.com"
    assert channels.resolve_telegram_chat_id(None, settings) == "100"
    assert channels.resolve_email_address(None, {}) is None


def test_slack_webhook_env_override_wins(monkeypatch):
    settings = {"slack_webhook_url": "https://hooks.example.com/stored"}
    assert channels.resolve_slack_webhook_url(settings) == "https://hooks.example.com/stored"
    assert channels.is_slack_webhook_locked() is False

    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.example.com/env")
    assert channels.resolve_slack_webhook_url(settings) == "https://hooks.example.com/env"
    assert channels.is_slack_webhook_locked() is True


def test_slack_text_mentions_assignee():
    assert channels.slack_text(Recipient(name="Dana", slack_user_id="U123"), "hi") == "<@U123> hi"
    assert channels.slack_text(Recipient(name="Dana"), "hi") == "hi"
    assert channels.slack_text(None, "hi") == "hi"


def test_send_telegram_posts_to_bot_api(monkeypatch, fake_response):
    calls = []

    def fake_post(url, headers=None, data=None, timeout=None):
        calls.append({"url": url, "payload": json.loads(data), "timeout": timeout})
        return fake_response()

    monkeypatch.setattr(channels.requests, "post", fake_post)
    channels.send_telegram("TOKEN", "42", "hello")

    assert calls[0]["url"] == "https://api.telegram.org/botTOKEN/sendMessage"
    assert calls[0]["payload"] == {"chat_id": "42", "text": "hello", "parse_mode": "HTML"}
    assert calls[0]["timeout"] == channels.CHANNEL_TIMEOUT


def test_send_telegram_raises_with_response_body(monkeypatch, fake_response):
    monkeypatch.setattr(
        channels.requests, "post", lambda *args, **kwargs: fake_response(400, text="chat not found", reason="Bad Request")
    )
    with pytest.raises(channels.NotificationDeliveryError, match="chat not found"):
        channels.send_telegram("TOKEN", "42", "hello")


def test_send_slack_includes_channel_override(monkeypatch, fake_response):
    calls = []

    def fake_post(url, headers=None, data=None, timeout=None):
        calls.append((url, json.loads(data)))
        return fake_response()

    monkeypatch.setattr(channels.requests, "post", fake_post)
    channels.send_slack("https://hooks.example.com/x", "hello", "#sales")
    channels.send_slack("https://hooks.example.com/x", "hello")

    assert calls[0] == ("https://hooks.example.com/x", {"text": "hello", "channel": "#sales"})
    assert calls[1] == ("https://hooks.example.com/x", {"text": "hello"})


def test_send_slack_raises_on_error_status(monkeypatch, fake_response):
    monkeypatch.setattr(channels.requests, "post", lambda *args, **kwargs: fake_response(500, reason="Server Error"))
    with pytest.raises(channels.NotificationDeliveryError, match="500"):
        channels.send_slack("https://hooks.example.com/x", "hello")


def test_send_email_without_smtp_host_is_logged(caplog):
    with caplog.at_level("INFO", logger="notifications.channels"):
        channels.send_email("dana@example.com", MESSAGE)
    assert "dana@example.com" in caplog.text


def test_dispatch_isolates_channel_failures(monkeypatch):
    sent = {}

    def boom(*args, **kwargs):
        raise RuntimeError("telegram exploded")

    monkeypatch.setattr(channels, "send_email", lambda to, message: sent.setdefault("email", to))
    monkeypatch.setattr(channels, "send_telegram", boom)
    monkeypatch.setattr(channels, "send_slack", lambda url, text, channel=None: sent.setdefault("slack", text))

    settings = {
        "email_enabled": True,
        "email_address": "team@example.com",
        "telegram_enabled": True,
        "telegram_bot_token": "TOKEN",
        "telegram_chat_id": "42",
        "slack_enabled": True,
        "slack_webhook_url": "https://hooks.example.com/x",
    }
    results = channels.dispatch(Recipient(name="Dana", slack_user_id="U9"), MESSAGE, settings)

    assert [(r.channel, r.success) for r in results] == [("email", True), ("telegram", False), ("slack", True)]
    assert results[1].error == "telegram exploded"
    assert sent["email"] == "team@example.com"
    assert sent["slack"].startswith("<@U9> ")


def test_dispatch_reports_missing_configuration(monkeypatch):
    settings = {"email_enabled": True, "telegram_enabled": True, "slack_enabled": False}
    results = channels.dispatch(None, MESSAGE, settings)

    assert [r.to_dict() for r in results] == [
        {"channel": "email", "success": False, "error": "Email address not configured"},
        {"channel": "telegram", "success": False, "error": "Telegram bot token not configured"},
    ]


def test_dispatch_network_error_is_a_channel_failure(monkeypatch):
    def unreachable(*args, **kwargs):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(channels.requests, "post", unreachable)
    settings = {"slack_enabled": True, "slack_webhook_url": "https://hooks.example.com/x"}
    results = channels.dispatch(None, MESSAGE, settings)

    assert len(results) == 1
    assert results[0].success is False
    assert "unreachable" in results[0].error


def test_dispatch_skips_disabled_channels():
    assert channels.dispatch(None, MESSAGE, {"email_address": "team@example.com"}) == []


def test_send_test_notification_reports_problems(monkeypatch):
    assert channels.send_test_notification("email", {"email_address": "team@example.com"}) == {"success": True}
    result = channels.send_test_notification("telegram", {"telegram_bot_token": "TOKEN"})
    assert result == {"success": False, "error": "Telegram not fully configured"}
    result = channels.send_test_notification("slack", {})
    assert result["success"] is False
    assert "SLACK_WEBHOOK_URL" in result["error"]

    with pytest.raises(ValueError):
        channels.send_test_notification("pager", {})


def test_send_telegram_escapes_html_entities(monkeypatch, fake_response):
    payloads = []

    def fake_post(url, headers=None, data=None, timeout=None):
        payloads.append(json.loads(data))
        return fake_response()

    monkeypatch.setattr(channels.requests, "post", fake_post)
    channels.send_telegram("TOKEN", "42", "⏰ Reminder: Follow up with AT&T <Labs>")

    assert payloads[0]["parse_mode"] == "HTML"
    assert payloads[0]["text"] == "⏰ Reminder: Follow up with AT&amp;T &lt;Labs&gt;"
