"""Tests for verification and reset email delivery."""

import smtplib
from unittest.mock import MagicMock, patch

from taskgate.service.email import EmailService


def _smtp_service(**overrides) -> EmailService:
    values = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="hunter22",
        base_url="https://tasks.example.com/",
    )
    values.update(overrides)
    return EmailService(**values)


class TestDevMode:
    def test_unconfigured_service_logs_and_succeeds(self):
        service = EmailService()
        assert service.is_configured is False
        with patch("taskgate.service.email.smtplib.SMTP") as smtp:
            assert service.send_email_verification("jane@example.com", "ab" * 32) is True
        smtp.assert_not_called()

    def test_redact_email(self):
        service = EmailService()
        assert service._redact_email("jane.doe@example.com") == "ja***@example.com"
        assert service._redact_email("not-an-email") == "redacted"


class TestLinks:
    def test_reset_link_points_at_frontend(self):
        service = _smtp_service()
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_password_reset("jane@example.com", "cd" * 32)

        to_email, subject, html_body, text_body = send.call_args.args
        assert to_email == "jane@example.com"
        assert subject == "Reset Your Password"
        expected = "https://tasks.example.com/reset-password?token=" + "cd" * 32
        assert expected in html_body
        assert expected in text_body
        assert "60 minutes" in text_body

    def test_verification_link_points_at_frontend(self):
        service = _smtp_service(verification_ttl_hours=48)
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_email_verification("jane@example.com", "ef" * 32)

        _, subject, html_body, text_body = send.call_args.args
        assert subject == "Verify Your Email Address"
        assert "https://tasks.example.com/verify-email?token=" + "ef" * 32 in html_body
        assert "48 hours" in text_body


class TestSmtp:
    def test_starttls_send(self):
        service = _smtp_service()
        server = MagicMock()
        with patch("taskgate.service.email.smtplib.SMTP") as smtp:
            smtp.return_value = server
            server.__enter__.return_value = server
            server.__exit__.return_value = False
            assert service.send_password_reset("jane@example.com", "ab" * 32) is True

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.com", "hunter22")
        server.send_message.assert_called_once()

    def test_implicit_tls_send(self):
        service = _smtp_service(smtp_use_tls=False, smtp_port=465)
        server = MagicMock()
        with patch("taskgate.service.email.smtplib.SMTP_SSL") as smtp_ssl:
            smtp_ssl.return_value = server
            server.__enter__.return_value = server
            server.__exit__.return_value = False
            assert service.send_email_verification("jane@example.com", "ab" * 32) is True

        assert smtp_ssl.call_args.args == ("smtp.example.com", 465)
        server.send_message.assert_called_once()

    def test_auth_failure_returns_false(self):
        service = _smtp_service()
        server = MagicMock()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with patch("taskgate.service.email.smtplib.SMTP") as smtp:
            smtp.return_value = server
            server.__enter__.return_value = server
            server.__exit__.return_value = False
            assert service.send_password_reset("jane@example.com", "ab" * 32) is False
        server.send_message.assert_not_called()

    def test_connection_failure_returns_false(self):
        service = _smtp_service()
        with patch(
            "taskgate.service.email.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")
        ):
            assert service.send_password_reset("jane@example.com", "ab" * 32) is False
