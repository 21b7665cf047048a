from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Tuple
from urllib.parse import quote, urlencode

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.action_types import ActionType, has
from tenantauth.service.string_utils import redact_email, route
from tenantauth.storage.models import ActionToken

logger = get_logger(__name__)

_ACTION_TEXT = (
    (ActionType.INVITE, "Invitation", "Join the application"),
    (ActionType.VALIDATE_EMAIL, "Email validation", "Validate your email address"),
    (ActionType.ACCEPT_TERMS, "Terms of use", "Accept the terms of use"),
    (
        ActionType.ACCEPT_PRIVACY_POLICY,
        "Privacy policy",
        "Accept the privacy policy",
    ),
    (ActionType.CHANGE_PASSWORD, "Password change", "Change your password"),
    (ActionType.RESET_PASSWORD, "Password reset", "Reset your password"),
    (ActionType.CHANGE_EMAIL, "Email change", "Change your email address"),
)


def build_action_link(frontend_url: str, action_route: str, token: str, email: str) -> str:
    """Deep link carrying the token and the lower-cased, url-encoded email.

    Web URLs get ``{frontend_url}/{route}``; custom schemes such as
    ``myapp://`` get the route appended as-is.
    """
    email = email.lower()
    action_route = route(action_route)
    if "://" in frontend_url and not frontend_url.startswith("http"):
        return f"{frontend_url}{action_route}?token={token}&email={quote(email, safe='')}"
    base = frontend_url.rstrip("/")
    return f"{base}/{action_route}?{urlencode({'token': token, 'email': email})}"


def action_labels(mask: int) -> Tuple[List[str], List[str]]:
    names: List[str] = []
    descriptions: List[str] = []
    for flag, name, description in _ACTION_TEXT:
        if has(mask, flag):
            names.append(name)
            descriptions.append(description)
    return names, descriptions


def generate_email_content(
    mask: int, link: str, validity_hours: Optional[int]
) -> Tuple[str, str]:
    """Subject and plain-text body listing every action granted by ``mask``."""
    names, descriptions = action_labels(mask)
    if len(names) == 1:
        subject = names[0]
    else:
        subject = f"Actions required: {', '.join(names)}"
    steps = "\n".join(f"{i}. {text}" for i, text in enumerate(descriptions, start=1))
    validity = (
        f"This link is valid for {validity_hours} hours.\n\n" if validity_hours else ""
    )
    body = (
        "Hello,\n\n"
        "You received this message because one or more actions are required on "
        "your account:\n\n"
        f"{steps}\n\n"
        "Please use the following link to complete them:\n\n"
        f"{link}\n\n"
        f"{validity}"
        "Regards,\nThe team\n"
    )
    return subject, body


class NotificationService:
    """Sends action-token emails over SMTP, or logs them when SMTP is not configured."""

    def __init__(self, settings: Settings) -> None:
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.email_from_address or settings.smtp_user
        self.from_name = settings.email_from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP; True when it was handed to the server."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
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
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_action_token_email(
        self, token: ActionToken, link: str, validity_hours: Optional[int] = None
    ) -> bool:
        subject, text_body = generate_email_content(int(token.type), link, validity_hours)
        html_body = (
            "<!DOCTYPE html><html><body>"
            + "".join(
                f"<p>{html.escape(line)}</p>" for line in text_body.split("\n\n")
            )
            + "</body></html>"
        )
        return self._send_email(token.email, subject, html_body, text_body)
