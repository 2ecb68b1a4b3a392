import smtplib

import pytest

from authcore.service.email import EmailService


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, from_addr, to_addr, message):
        FakeSMTP.sent.append((from_addr, to_addr, message))


class RefusingSMTP(FakeSMTP):
    def __init__(self, host, port, timeout=None):
        raise ConnectionRefusedError("connection refused")


@pytest.fixture
def configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="pw",
        base_url="https://auth.example.com/",
    )


class TestEmailService:
    def test_dev_mode_logs_only(self):
        service = EmailService()
        assert not service.is_configured
        assert service.send_password_reset("alice@example.com", "tok") is True

    def test_reset_link_uses_base_url(self, configured, monkeypatch):
        FakeSMTP.sent = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

        assert configured.send_password_reset("alice@example.com", "tok123", ttl_minutes=15)

        from_addr, to_addr, message = FakeSMTP.sent[0]
        assert from_addr == "mailer@example.com"
        assert to_addr == "alice@example.com"
        assert "https://auth.example.com/reset?token=tok123" in message

    def test_new_login_escapes_device_text(self, configured, monkeypatch):
        FakeSMTP.sent = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

        configured.send_new_login_notification(
            "alice@example.com",
            device="<script>x</script>",
            location="Berlin, Berlin, Germany",
            ip_address="8.8.8.8",
        )

        message = FakeSMTP.sent[0][2]
        assert "<strong>&lt;script&gt;x&lt;/script&gt; from Berlin" in message

    def test_connection_failure_returns_false(self, configured, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
        assert configured.send_password_reset("alice@example.com", "tok") is False

    def test_redact_email(self):
        assert EmailService._redact_email("alice@example.com") == "al***@example.com"
        assert EmailService._redact_email("nobody") == "redacted"
