"""Tests for notification payloads and the SMTP dispatcher."""

import smtplib

import pytest

from gatehide.service import notifications
from gatehide.service.notifications import (
    EmailNotificationDispatcher,
    Notification,
    _redact_email,
    build_reset_link,
    dispatch_best_effort,
    email_verification_notification,
    password_reset_notification,
)

from tests.conftest import RecordingNotifier


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, sender, recipient, message):
        self.sent.append((sender, recipient, message))


class RefusingSMTP(FakeSMTP):
    def sendmail(self, sender, recipient, message):
        raise smtplib.SMTPRecipientsRefused({recipient: (550, b"no such user")})


@pytest.fixture(autouse=True)
def clear_fake_smtp():
    FakeSMTP.instances = []
    yield


def _configured_dispatcher():
    return EmailNotificationDispatcher(
        smtp_host="smtp.example.com",
        smtp_port=2525,
        smtp_user="mailer",
        smtp_password="secret",
        from_email="no-reply@example.com",
        from_name="GateHide",
    )


class TestPayloads:
    def test_reset_link_encodes_query(self, settings):
        link = build_reset_link(settings, "abc123", "first+last@example.com")
        assert link == (
            "https://app.example.com/reset-password?token=abc123&email=first%2Blast%40example.com"
        )

    def test_reset_notification_template_data(self, settings):
        note = password_reset_notification(
            settings, user_name="Player One", email="player@example.com", token="tok"
        )
        data = note.template_data
        assert data["app_name"] == settings.app_name
        assert data["user_name"] == "Player One"
        assert data["support_link"] == "https://app.example.com/support"
        assert data["unsubscribe_link"] == "https://app.example.com/unsubscribe"
        assert data["expiry_minutes"] == settings.password_reset_ttl_minutes
        assert "tok" in data["reset_link"]

    def test_verification_notification_carries_code(self, settings):
        note = email_verification_notification(
            settings,
            user_name="Player One",
            current_email="old@example.com",
            new_email="new@example.com",
            code="493021",
        )
        assert note.subject == f"Verify your new {settings.app_name} email"
        assert "493021" in note.content
        assert note.template_data["verification_code"] == "493021"

    def test_redact_email(self):
        assert _redact_email("player@example.com") == "pl***@example.com"
        assert _redact_email("nonsense") == "redacted"


class TestDispatchBestEffort:
    def test_delivers_through_dispatcher(self):
        notifier = RecordingNotifier()
        sent = dispatch_best_effort(
            notifier, "a@example.com", Notification("Hi", "Body", {"k": 1}), kind="test"
        )
        assert sent is True
        assert notifier.sent[0]["template_data"] == {"k": 1}

    def test_swallows_exceptions(self):
        notifier = RecordingNotifier()
        notifier.fail = True
        assert dispatch_best_effort(
            notifier, "a@example.com", Notification("Hi", "Body"), kind="test"
        ) is False

    def test_missing_dispatcher(self):
        assert dispatch_best_effort(None, "a@example.com", Notification("Hi", "Body"), kind="test") is False


class TestEmailNotificationDispatcher:
    def test_unconfigured_logs_instead_of_sending(self, monkeypatch):
        monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
        dispatcher = EmailNotificationDispatcher()

        assert not dispatcher.is_configured
        assert dispatcher.send_notification("a@example.com", "Hi", "Body", {}) is True
        assert FakeSMTP.instances == []

    def test_from_settings(self, settings):
        configured = settings.model_copy(
            update={"smtp_host": "smtp.example.com", "email_from_address": "no-reply@example.com"}
        )
        dispatcher = EmailNotificationDispatcher.from_settings(configured)
        assert dispatcher.is_configured
        assert dispatcher.smtp_port == configured.smtp_port

    def test_sends_over_starttls(self, monkeypatch):
        monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
        dispatcher = _configured_dispatcher()

        assert dispatcher.send_notification(
            "player@example.com", "Reset", "Line one\n\nLine <two>", {"app_name": "GateHide"}
        )

        [server] = FakeSMTP.instances
        assert (server.host, server.port) == ("smtp.example.com", 2525)
        assert server.started_tls
        assert server.logged_in == ("mailer", "secret")
        sender, recipient, message = server.sent[0]
        assert sender == "no-reply@example.com"
        assert recipient == "player@example.com"
        assert "Subject: Reset" in message

    def test_refused_recipient_returns_false(self, monkeypatch):
        monkeypatch.setattr(notifications.smtplib, "SMTP", RefusingSMTP)
        assert _configured_dispatcher().send_notification("x@example.com", "Hi", "Body", {}) is False

    def test_html_escapes_content(self):
        html = _configured_dispatcher()._render_html("Reset", "Hi <b>there</b>", {})
        assert "&lt;b&gt;there&lt;/b&gt;" in html
        assert "<b>there</b>" not in html
