"""Email delivery: dev-mode logging, SMTP happy path and failure mapping."""

import smtplib

import pytest

from tenantguard.service import email as email_module
from tenantguard.service.email import DELIVERY_FAILED_MESSAGE, EmailService
from tenantguard.service.errors import DeliveryError


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, sender, recipient, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.sent.append((sender, recipient, message))


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(email_module.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="secret",
        from_email="no-reply@example.com",
        base_url="https://auth.example.com/",
    )


def test_unconfigured_service_logs_instead_of_sending(fake_smtp):
    service = EmailService()

    assert service.is_configured is False
    service.send("casey@example.com", "Hello", "body")
    assert fake_smtp.instances == []


def test_reset_email_carries_link(configured, fake_smtp):
    configured.send_password_reset("casey@example.com", "abc123")

    (server,) = fake_smtp.instances
    sender, recipient, message = server.sent[0]
    assert sender == "no-reply@example.com"
    assert recipient == "casey@example.com"
    assert server.logged_in == "mailer"
    assert "https://auth.example.com/v1/auth/reset-password/abc123" in message


@pytest.mark.parametrize(
    "failure",
    [
        smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        smtplib.SMTPRecipientsRefused({"casey@example.com": (550, b"no such user")}),
        smtplib.SMTPServerDisconnected("gone"),
        TimeoutError("timed out"),
        ConnectionRefusedError("refused"),
    ],
)
def test_failures_surface_as_delivery_error(configured, fake_smtp, failure):
    fake_smtp.fail_with = failure

    with pytest.raises(DeliveryError) as excinfo:
        configured.send("casey@example.com", "Subject", "body")
    assert excinfo.value.message == DELIVERY_FAILED_MESSAGE
    assert excinfo.value.status_code == 502


def test_implicit_tls_mode(fake_smtp):
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_port=465,
        smtp_use_tls=False,
        from_email="no-reply@example.com",
    )

    service.send_welcome("casey@example.com", "Casey")

    (server,) = fake_smtp.instances
    assert server.port == 465
    assert "Casey" in server.sent[0][2]
