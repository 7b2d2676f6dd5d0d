from typing import Optional

import pytest

from bookflow import main as bookflow_main
from bookflow.mail import providers as providers_module
from bookflow.app.services import billing as billing_services
from bookflow.mail import (
    DevPrintProvider,
    EmailProvider,
    SMTPProvider,
    create_email_provider,
    load_email_config,
)


class _RecordingProvider(EmailProvider):
    name = "recording"

    def __init__(self) -> None:
        super().__init__(from_email="billing@example.com")

    def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        reply_to: Optional[str] = None,
    ) -> None:  # type: ignore[override]
        pass


def _smtp_config(**overrides):
    env = {
        "EMAIL_PROVIDER": "smtp",
        "SMTP_HOST": "mail.example.com",
        "SMTP_PORT": "2525",
        "SMTP_USER": "mailer",
        "SMTP_PASS": "secret",
        "FROM_EMAIL": "notifications@example.com",
    }
    env.update(overrides)
    return load_email_config(env=env)


def test_default_provider_is_dev_print():
    config = load_email_config(env={})
    provider = create_email_provider(config)
    assert isinstance(provider, DevPrintProvider)
    assert provider.from_email == "billing@bookflow.local"
    assert config.support_email == "billing@bookflow.local"
    assert config.smtp.authenticated is False


def test_smtp_provider_configuration():
    provider = create_email_provider(_smtp_config())
    assert isinstance(provider, SMTPProvider)
    assert provider.settings.host == "mail.example.com"
    assert provider.settings.port == 2525
    assert provider.settings.username == "mailer"
    assert provider.settings.authenticated is True
    assert provider.from_email == "notifications@example.com"
    assert provider.describe()["smtp_host"] == "mail.example.com:2525"


def test_smtp_message_sets_reply_to_support_address():
    provider = create_email_provider(_smtp_config())

    message = provider.build_message(
        "owner@example.com",
        "Payment failed",
        "<p>declined</p>",
        "declined",
        reply_to="help@example.com",
    )

    assert message["To"] == "owner@example.com"
    assert message["Reply-To"] == "help@example.com"
    assert message.is_multipart()
    assert [part.get_content_type() for part in message.iter_parts()] == ["text/plain", "text/html"]


def test_smtp_sends_through_client(monkeypatch):
    sent = []

    class _FakeSMTP:
        def __init__(self, host, port, timeout):
            sent.append(("connect", host, port, timeout))

        def __enter__(self):
            return self

        def __exit__(self, *exc_info):
            return False

        def starttls(self):
            sent.append(("starttls",))

        def login(self, username, password):
            sent.append(("login", username))

        def send_message(self, message):
            sent.append(("send", message["To"]))

    monkeypatch.setattr(providers_module.smtplib, "SMTP", _FakeSMTP)
    provider = create_email_provider(_smtp_config(SMTP_TIMEOUT="5"))

    provider.send_email("owner@example.com", "Subject", "<p>hi</p>", "hi")

    assert sent == [
        ("connect", "mail.example.com", 2525, 5.0),
        ("starttls",),
        ("login", "mailer"),
        ("send", "owner@example.com"),
    ]


def test_unknown_provider_falls_back_to_dev(caplog):
    config = load_email_config(env={"EMAIL_PROVIDER": "carrier-pigeon"})

    with caplog.at_level("WARNING"):
        provider = create_email_provider(config)

    assert isinstance(provider, DevPrintProvider)
    assert "carrier-pigeon" in caplog.text


def test_invalid_smtp_port_is_rejected():
    with pytest.raises(ValueError, match="SMTP_PORT"):
        load_email_config(env={"SMTP_PORT": "not-a-port"})


def test_billing_url_points_at_settings():
    config = load_email_config(env={"APP_BASE_URL": "https://app.example.com/"})
    assert config.billing_url == "https://app.example.com/settings/billing"


def test_set_email_provider_reaches_billing_services():
    original = bookflow_main.get_email_provider()
    replacement = _RecordingProvider()
    bookflow_main.set_email_provider(replacement)

    try:
        assert billing_services._resolve_email_provider(bookflow_main.EMAIL_CONFIG) is replacement
    finally:
        bookflow_main.set_email_provider(original)
