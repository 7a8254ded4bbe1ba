from __future__ import annotations

import smtplib
import ssl
import threading
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Protocol

from gatehouse.logging import get_logger, hash_email
from gatehouse.service.tokens import TokenPurpose
from gatehouse.storage.models import User, utcnow

logger = get_logger(__name__)


class Mailer(Protocol):
    def deliver(self, user: User, token: str, purpose: TokenPurpose) -> bool: ...


def recipient_for(user: User, purpose: TokenPurpose) -> str:
    """Confirmation links go to the pending address; resets to the current one."""
    if purpose == TokenPurpose.CONFIRM_EMAIL:
        return user.confirmable_email
    return user.email


@dataclass
class OutboxMessage:
    to: str
    user_id: str
    token: str
    purpose: TokenPurpose
    sent_at: datetime


class OutboxMailer:
    """Records deliveries in memory instead of sending them."""

    def __init__(self) -> None:
        self.messages: List[OutboxMessage] = []
        self._lock = threading.Lock()

    def deliver(self, user: User, token: str, purpose: TokenPurpose) -> bool:
        message = OutboxMessage(
            to=recipient_for(user, purpose),
            user_id=user.id,
            token=token,
            purpose=TokenPurpose(purpose),
            sent_at=utcnow(),
        )
        with self._lock:
            self.messages.append(message)
        logger.info("outbox_mail_recorded", user_id=user.id, purpose=message.purpose.value)
        return True

    def last(self, purpose: Optional[TokenPurpose] = None) -> Optional[OutboxMessage]:
        with self._lock:
            for message in reversed(self.messages):
                if purpose is None or message.purpose == purpose:
                    return message
        return None

    def clear(self) -> None:
        with self._lock:
            self.messages.clear()


class EmailService:
    """SMTP delivery of confirmation and password reset links.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps local development usable without a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: str = "no-reply@example.com",
        from_name: str = "Gatehouse",
        base_url: str = "http://localhost:8000",
        token_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.token_ttl_minutes = token_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def deliver(self, user: User, token: str, purpose: TokenPurpose) -> bool:
        to_email = recipient_for(user, purpose)
        if TokenPurpose(purpose) == TokenPurpose.CONFIRM_EMAIL:
            return self.send_confirmation(to_email, token)
        return self.send_password_reset(to_email, token)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send one message; returns False (after logging) on any SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to_hash=hash_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to_hash=hash_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to_hash=hash_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to_hash=hash_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to_hash=hash_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to_hash=hash_email(to_email), subject=subject)
        return True

    def _render(self, heading: str, intro: str, url: str, button: str) -> tuple[str, str]:
        html_body = f"""<!DOCTYPE html>
<html>
<body>
    <h1>{heading}</h1>
    <p>{intro}</p>
    <p><a href="{url}">{button}</a></p>
    <p>This link will expire in {self.token_ttl_minutes} minutes.</p>
</body>
</html>
"""
        text_body = f"""{heading}

{intro}

{url}

This link will expire in {self.token_ttl_minutes} minutes.
"""
        return html_body, text_body

    def send_confirmation(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/confirmations/{token}"
        html_body, text_body = self._render(
            "Confirm your email",
            "Please confirm your email address by following the link below.",
            url,
            "Confirm Email",
        )
        return self._send_email(to_email, "Confirmation Instructions", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/passwords/{token}"
        html_body, text_body = self._render(
            "Reset your password",
            "We received a request to reset your password. If you didn't make it, ignore this email.",
            url,
            "Reset Password",
        )
        return self._send_email(to_email, "Password Reset Instructions", html_body, text_body)
