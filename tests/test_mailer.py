"""
Tests for the recovery mailer — amount formatting, template selection, SMTP paths.
"""

import smtplib
from unittest.mock import MagicMock, patch

from phantom.services.mailer import (
    RecoveryMessage,
    SmtpMailer,
    compose_recovery_email,
    format_amount,
    html_to_text,
)


def _message(**overrides) -> RecoveryMessage:
    values = {
        "target_id": "g-1",
        "to_email": "jane.doe@example.com",
        "amount": 4999,
        "currency": "usd",
        "link_url": "https://phantom.test/api/v1/l/g-1",
        "strategy": "smart_retry",
        "decline_type": "soft",
        "customer_name": "Jane Doe",
        "business_name": "Acme Cloud",
        "support_email": "help@acme.example.com",
    }
    values.update(overrides)
    return RecoveryMessage(**values)


class TestFormatAmount:
    def test_two_decimal(self):
        assert format_amount(4999, "usd") == "$49.99"
        assert format_amount(123456, "GBP") == "£1,234.56"

    def test_zero_decimal(self):
        assert format_amount(5000, "jpy") == "¥5,000"

    def test_unknown_currency(self):
        assert format_amount(100, "chf") == "CHF 1.00"


class TestCompose:
    def test_first_attempt(self):
        subject, body = compose_recovery_email(_message())
        assert "Acme Cloud" in subject
        assert "Hi Jane" in body
        assert "$49.99" in body
        assert "https://phantom.test/api/v1/l/g-1" in body
        assert "last reminder" not in body

    def test_final_notice(self):
        subject, body = compose_recovery_email(_message(attempt=3))
        assert subject.startswith("Final notice")
        assert "last reminder" in body

    def test_strategy_wording(self):
        _, bridge = compose_recovery_email(_message(strategy="technical_bridge"))
        assert "verification" in bridge
        _, refresh = compose_recovery_email(_message(strategy="card_refresh", decline_type="hard"))
        assert "Update your card details" in refresh
        _, manual = compose_recovery_email(_message(strategy="high_value_manual", amount=90000))
        assert "help@acme.example.com" in manual

    def test_protection_template(self):
        subject, body = compose_recovery_email(_message(protection=True, strategy="card_refresh"))
        assert "about to expire" in subject
        assert "expires soon" in body

    def test_name_is_escaped(self):
        _, body = compose_recovery_email(_message(customer_name="<script>x</script>"))
        assert "<script>" not in body

    def test_missing_name(self):
        _, body = compose_recovery_email(_message(customer_name=None))
        assert "Hi there" in body

    def test_html_to_text(self):
        assert html_to_text("<p>Hello</p><p>World<br>again</p>") == "Hello\n\nWorld\nagain"


class TestSmtpMailer:
    async def test_dry_run(self):
        result = await SmtpMailer(sender="a@b.c", password="x", dry_run=True).send_recovery_email(_message())
        assert result.ok and result.dry_run

    async def test_not_configured(self):
        result = await SmtpMailer(sender="", password="", dry_run=False).send_recovery_email(_message())
        assert not result.ok
        assert "not configured" in result.error

    async def test_sends_over_smtp(self):
        server = MagicMock()
        with patch("phantom.services.mailer.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = server
            result = await SmtpMailer(sender="bot@acme.example.com", password="pw", dry_run=False) \
                .send_recovery_email(_message())

        assert result.ok
        assert result.message_id
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@acme.example.com", "pw")
        sender, recipients, raw = server.sendmail.call_args.args
        assert recipients == ["jane.doe@example.com"]
        assert "Reply-To: help@acme.example.com" in raw

    async def test_smtp_error_is_reported(self):
        with patch("phantom.services.mailer.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})
            result = await SmtpMailer(sender="bot@acme.example.com", password="pw", dry_run=False) \
                .send_recovery_email(_message())
        assert not result.ok
