"""
Recovery Mailer — composes and delivers recovery / protection emails.

The Pulse Engine only decides *that* a ghost gets an email; wording lives
here, keyed on recovery strategy, decline type, and attempt number.
Templates are Jinja2 files under ``phantom/templates/email``.
"""

import asyncio
import logging
import re
import smtplib
import uuid
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from phantom.config import settings
from phantom.services.vault import redact_email

logger = logging.getLogger("phantom.mailer")

TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "email"

CURRENCY_SYMBOLS = {
    "usd": "$",
    "gbp": "£",
    "eur": "€",
    "cad": "C$",
    "aud": "A$",
    "jpy": "¥",
}
ZERO_DECIMAL_CURRENCIES = {"jpy"}

# Subject per attempt (1-based); the final nudge says so.
RECOVERY_SUBJECTS = {
    1: "Action needed: your {business} payment didn't go through",
    2: "Reminder: update your payment for {business}",
    3: "Final notice: your {business} subscription is at risk",
}
PROTECTION_SUBJECT = "Your card on file with {business} is about to expire"


@dataclass
class RecoveryMessage:
    target_id: str
    to_email: str
    amount: int
    currency: str
    link_url: str
    strategy: str
    decline_type: Optional[str] = None
    customer_name: Optional[str] = None
    business_name: Optional[str] = None
    support_email: Optional[str] = None
    attempt: int = 1
    protection: bool = False


@dataclass
class MailResult:
    ok: bool
    error: Optional[str] = None
    message_id: Optional[str] = None
    dry_run: bool = False


def format_amount(amount: int, currency: str) -> str:
    """Minor units → display string, e.g. (4999, "gbp") → "£49.99"."""
    code = (currency or "usd").lower()
    symbol = CURRENCY_SYMBOLS.get(code, code.upper() + " ")
    if code in ZERO_DECIMAL_CURRENCIES:
        return f"{symbol}{amount:,}"
    return f"{symbol}{amount / 100:,.2f}"


def _get_jinja_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def compose_recovery_email(message: RecoveryMessage) -> tuple[str, str]:
    """Returns (subject, body_html)."""
    business = message.business_name or "your subscription"
    if message.protection:
        template_name = "protection.html"
        subject = PROTECTION_SUBJECT.format(business=business)
    else:
        template_name = "recovery.html"
        attempt = min(max(message.attempt, 1), max(RECOVERY_SUBJECTS))
        subject = RECOVERY_SUBJECTS[attempt].format(business=business)

    template = _get_jinja_env().get_template(template_name)
    body_html = template.render(
        first_name=(message.customer_name or "").split(" ")[0] or "there",
        business_name=business,
        support_email=message.support_email,
        amount=format_amount(message.amount, message.currency),
        link_url=message.link_url,
        strategy=message.strategy,
        decline_type=message.decline_type,
        attempt=message.attempt,
        final_notice=message.attempt >= max(RECOVERY_SUBJECTS),
    )
    return subject, body_html


def html_to_text(body_html: str) -> str:
    text = re.sub(r"<br\s*/?>", "\n", body_html)
    text = re.sub(r"</p>", "\n\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


class Mailer:
    """Outbound mail collaborator used by the Pulse Engine."""

    async def send_recovery_email(self, message: RecoveryMessage) -> MailResult:
        raise NotImplementedError


class SmtpMailer(Mailer):
    """SMTP delivery (STARTTLS). Runs the blocking smtplib call in a worker thread."""

    def __init__(
        self,
        sender: Optional[str] = None,
        password: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        dry_run: Optional[bool] = None,
    ):
        self.sender = sender if sender is not None else settings.smtp_email
        self.password = password if password is not None else settings.smtp_app_password
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.dry_run = settings.mailer_dry_run if dry_run is None else dry_run

    async def send_recovery_email(self, message: RecoveryMessage) -> MailResult:
        subject, body_html = compose_recovery_email(message)

        if self.dry_run:
            logger.info("📭 [dry-run] %s → %s", subject, redact_email(message.to_email))
            return MailResult(ok=True, dry_run=True, message_id=f"dry-run-{uuid.uuid4().hex[:12]}")

        if not self.sender or not self.password:
            logger.warning("SMTP not configured — skipping email send")
            return MailResult(ok=False, error="SMTP credentials not configured")

        try:
            message_id = await asyncio.to_thread(
                self._send, message.to_email, subject, body_html, message.support_email
            )
        except smtplib.SMTPAuthenticationError as e:
            logger.error("SMTP auth failed: %s", e)
            return MailResult(ok=False, error="SMTP authentication failed")
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email send failed for %s: %s", message.target_id, e)
            return MailResult(ok=False, error=str(e)[:500])

        logger.info("✅ Email sent to %s: %s", redact_email(message.to_email), subject)
        return MailResult(ok=True, message_id=message_id)

    def _send(self, to: str, subject: str, body_html: str, reply_to: Optional[str]) -> str:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.attach(MIMEText(html_to_text(body_html), "plain"))
        msg.attach(MIMEText(body_html, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=15) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(self.sender, self.password)
            server.sendmail(self.sender, [to], msg.as_string())
        return msg["Message-ID"]


_mailer: Optional[Mailer] = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = SmtpMailer()
    return _mailer
