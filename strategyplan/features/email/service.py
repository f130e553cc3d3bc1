"""
Transactional email.

Uses Resend when RESEND_API_KEY is set; otherwise messages are only logged
(local development, tests).
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from strategyplan.core.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
EMAIL_TIMEOUT_SECONDS = 10


class EmailDeliveryError(Exception):
    pass


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> None:
        """Deliver one message. Raises EmailDeliveryError on failure."""
        ...


class ResendEmailSender:
    def __init__(self, api_key: str, sender: Optional[str] = None, timeout: float = EMAIL_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.sender = sender or settings.EMAIL_FROM
        self.timeout = timeout

    def send(self, message: EmailMessage) -> None:
        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        try:
            response = httpx.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Resend delivery failed: {e}")


class LogEmailSender:
    """Logs instead of sending."""

    def send(self, message: EmailMessage) -> None:
        logger.info("email.suppressed: %s", message.subject)


def get_email_sender() -> EmailSender:
    if settings.RESEND_API_KEY:
        return ResendEmailSender(settings.RESEND_API_KEY)
    return LogEmailSender()


def render_welcome_email(
    to: str,
    first_name: str,
    temp_password: str,
    plan_label: str,
    login_url: Optional[str] = None,
) -> EmailMessage:
    login_url = login_url or f"{settings.APP_BASE_URL.rstrip('/')}/login"
    text = (
        f"Hi {first_name},\n\n"
        f"Your StrategyPlan account is ready on the {plan_label} plan.\n\n"
        f"Email: {to}\n"
        f"Temporary password: {temp_password}\n\n"
        f"Sign in at {login_url}. You will be asked to choose a new password.\n"
    )
    html = (
        f"<p>Hi {first_name},</p>"
        f"<p>Your StrategyPlan account is ready on the <strong>{plan_label}</strong> plan.</p>"
        f"<p>Email: {to}<br>Temporary password: <code>{temp_password}</code></p>"
        f"<p><a href=\"{login_url}\">Sign in</a>. You will be asked to choose a new password.</p>"
    )
    return EmailMessage(to=to, subject="Welcome to StrategyPlan", html=html, text=text)
