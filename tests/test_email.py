import smtplib

import pytest

from findclass.service.email import EmailService
from findclass.storage.models import VerificationPurpose


class FakeSMTP:
    """Records what would have been sent."""

    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.messages.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def configured():
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="app-password",
        from_email="noreply@findclass.nz",
    )
    yield service
    service.shutdown()


def test_dev_mode_logs_instead_of_sending():
    service = EmailService()
    assert not service.is_configured
    assert service.send_verification_code("alice@example.com", VerificationPurpose.REGISTER, "123456")
    service.shutdown()


def test_sends_code_over_smtp(configured, fake_smtp):
    assert configured.send_verification_code(
        "alice@example.com", VerificationPurpose.PASSWORD_RESET, "654321"
    )

    server = fake_smtp.instances[0]
    assert server.started_tls
    assert server.logged_in == ("mailer@example.com", "app-password")
    from_addr, to_addr, message = server.messages[0]
    assert from_addr == "noreply@findclass.nz"
    assert to_addr == "alice@example.com"
    assert "654321" in message
    assert "Reset your FindClass password" in message


def test_send_is_queued(configured, fake_smtp):
    configured.send("alice@example.com", VerificationPurpose.LOGIN, "111222")
    configured.shutdown(wait=True)

    assert fake_smtp.instances[0].messages[0][1] == "alice@example.com"


@pytest.mark.parametrize(
    "error", [smtplib.SMTPException("boom"), OSError("unreachable")]
)
def test_delivery_failure_returns_false(configured, monkeypatch, error):
    class FailingSMTP(FakeSMTP):
        def sendmail(self, *args):
            raise error

    monkeypatch.setattr(smtplib, "SMTP", FailingSMTP)
    assert not configured.send_verification_code(
        "alice@example.com", VerificationPurpose.REGISTER, "123456"
    )


def test_redacts_addresses_in_logs():
    service = EmailService()
    assert service._redact_email("alice@example.com") == "al***@example.com"
    assert service._redact_email("nonsense") == "redacted"
    service.shutdown()
