import smtplib
from unittest.mock import patch

from framegate.service.email import EmailService


def _smtp_service(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@example.com",
        smtp_password="app-password",
        from_email="no-reply@example.com",
        base_url="https://shop.example.com/",
    )
    options.update(overrides)
    return EmailService(**options)


def test_dev_mode_logs_instead_of_sending():
    service = EmailService()
    assert service.is_configured is False
    with patch("framegate.service.email.smtplib.SMTP") as smtp:
        assert service.send_password_reset("owner@example.com", "tok") is True
    smtp.assert_not_called()


def test_from_settings(settings):
    service = EmailService.from_settings(settings)
    assert service.reset_ttl_minutes == settings.password_reset_ttl_minutes
    assert service.base_url == settings.app_base_url.rstrip("/")


def test_starttls_send_contains_link():
    service = _smtp_service()
    with patch("framegate.service.email.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        assert service.send_email_verification("owner@example.com", "abc123") is True
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer@example.com", "app-password")
    sender, recipient, message = server.sendmail.call_args.args
    assert sender == "no-reply@example.com"
    assert recipient == "owner@example.com"
    assert "https://shop.example.com/verify-email?token=abc123" in message


def test_implicit_tls():
    service = _smtp_service(smtp_use_tls=False, smtp_port=465)
    with patch("framegate.service.email.smtplib.SMTP_SSL") as smtp_ssl:
        server = smtp_ssl.return_value.__enter__.return_value
        assert service.send_password_changed("owner@example.com") is True
    server.sendmail.assert_called_once()


def test_failures_return_false():
    service = _smtp_service()
    with patch("framegate.service.email.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        assert service.send_password_reset("owner@example.com", "tok") is False
    with patch("framegate.service.email.smtplib.SMTP", side_effect=OSError("unreachable")):
        assert service.send_password_reset("owner@example.com", "tok") is False


def test_html_body_is_escaped():
    service = _smtp_service()
    html, text = service._compose("Hi <b>", ["a & b"], ("Go", "https://x.example/?a=1&b=2"))
    assert "Hi &lt;b&gt;" in html
    assert "a &amp; b" in html
    assert "https://x.example/?a=1&b=2" in text
