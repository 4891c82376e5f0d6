"""
Outgoing email over SMTP.

Templates are plain text. ``send`` reports delivery as a bool instead of raising,
the email jobs turn a False into a retry.
"""
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class UnknownEmailKindError(ValueError):
    pass


@dataclass(frozen=True)
class SmtpConfig:
    host: Optional[str]
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    from_email: str = "no-reply@expense-tracker.local"
    timeout: int = 20

    @property
    def configured(self) -> bool:
        return bool(self.host)


def _welcome(data: Mapping[str, Any]) -> Tuple[str, str]:
    name = data.get("user_name") or "there"
    return (
        "Welcome to Expense Tracker",
        f"Hi {name},\n\nYour account is ready. Add your first expense and we will "
        "categorize it for you.\n",
    )


def _budget_alert(data: Mapping[str, Any]) -> Tuple[str, str]:
    name = data.get("user_name") or "there"
    alert = data.get("alert") or {}
    category = alert.get("category_name", "a category")
    return (
        f"Budget alert: {category}",
        f"Hi {name},\n\nYou have spent {alert.get('spent', 0):.2f} of your "
        f"{alert.get('budget_amount', 0):.2f} budget for {category} "
        f"({alert.get('percentage', 0):.0f}%).\n",
    )


def _monthly_report(data: Mapping[str, Any]) -> Tuple[str, str]:
    name = data.get("user_name") or "there"
    summary = (data.get("report_data") or {}).get("summary", {})
    return (
        "Your monthly expense report",
        f"Hi {name},\n\nLast month you recorded {summary.get('transaction_count', 0)} expenses "
        f"totalling {summary.get('total_expenses', 0):.2f}.\n",
    )


def _password_reset(data: Mapping[str, Any]) -> Tuple[str, str]:
    return (
        "Reset your password",
        f"Use this token to reset your password: {data.get('reset_token', '')}\n\n"
        "If you did not ask for a reset you can ignore this email.\n",
    )


TEMPLATES: Dict[str, Callable[[Mapping[str, Any]], Tuple[str, str]]] = {
    "welcome": _welcome,
    "budget-alert": _budget_alert,
    "monthly-report": _monthly_report,
    "password-reset": _password_reset,
}


def render_email(kind: str, template_data: Mapping[str, Any]) -> Tuple[str, str]:
    """Subject and body for an email kind. Raises UnknownEmailKindError."""
    template = TEMPLATES.get(kind)
    if template is None:
        raise UnknownEmailKindError(f"Unknown email type: {kind}")
    return template(template_data)


class EmailSender:
    def __init__(self, config: SmtpConfig, smtp_factory=None):
        self.config = config
        self._smtp_factory = smtp_factory

    @classmethod
    def from_settings(cls, settings) -> "EmailSender":
        return cls(SmtpConfig(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_USE_TLS,
            from_email=settings.EMAIL_FROM,
        ))

    def _connect(self) -> smtplib.SMTP:
        if self._smtp_factory is not None:
            return self._smtp_factory(self.config)
        context = ssl.create_default_context()
        # Port 465 uses implicit SSL, anything else STARTTLS when enabled
        if self.config.port == 465:
            return smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=self.config.timeout,
                                    context=context)
        server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.config.timeout)
        if self.config.use_tls:
            server.starttls(context=context)
        return server

    def send(self, kind: str, recipient: str, template_data: Mapping[str, Any]) -> bool:
        subject, body = render_email(kind, template_data)

        if not self.config.configured:
            logger.warning(f"SMTP is not configured, cannot send {kind} email to {recipient}")
            return False

        msg = EmailMessage()
        msg["From"] = self.config.from_email
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            server = self._connect()
            try:
                if self.config.user and self.config.password:
                    server.login(self.config.user, self.config.password)
                server.send_message(msg)
            finally:
                try:
                    server.quit()
                except smtplib.SMTPException:
                    pass
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send {kind} email to {recipient}: {e}")
            return False

        logger.info(f"Sent {kind} email to {recipient}")
        return True
