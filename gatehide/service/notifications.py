from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

from gatehide.config import Settings
from gatehide.logging import get_logger

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    """Delivery channel for reset links, verification codes and notices.

    Callers treat delivery as fire-and-forget: a False return or a raised
    exception is logged and never fails the operation that asked for it.
    """

    def send_notification(
        self,
        recipient: str,
        subject: str,
        content: str,
        template_data: Dict[str, Any],
    ) -> bool:
        ...


@dataclass(frozen=True)
class Notification:
    subject: str
    content: str
    template_data: Dict[str, Any] = field(default_factory=dict)


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _base_template_data(settings: Settings, user_name: str) -> Dict[str, Any]:
    base = settings.app_base_url.rstrip("/")
    return {
        "app_name": settings.app_name,
        "user_name": user_name,
        "support_link": f"{base}/support",
        "unsubscribe_link": f"{base}/unsubscribe",
    }


def build_reset_link(settings: Settings, token: str, email: str) -> str:
    base = settings.app_base_url.rstrip("/")
    return f"{base}/reset-password?{urlencode({'token': token, 'email': email})}"


def password_reset_notification(
    settings: Settings, *, user_name: str, email: str, token: str
) -> Notification:
    reset_link = build_reset_link(settings, token, email)
    ttl = settings.password_reset_ttl_minutes
    data = _base_template_data(settings, user_name)
    data.update({"reset_link": reset_link, "expiry_minutes": ttl})
    content = (
        f"Hello {user_name},\n\n"
        f"We received a request to reset your {settings.app_name} password. "
        "Visit the link below to choose a new password:\n\n"
        f"{reset_link}\n\n"
        f"This link will expire in {ttl} minutes.\n\n"
        "If you didn't request this, you can safely ignore this email."
    )
    return Notification(
        subject=f"Reset your {settings.app_name} password",
        content=content,
        template_data=data,
    )


def email_verification_notification(
    settings: Settings, *, user_name: str, current_email: str, new_email: str, code: str
) -> Notification:
    ttl = settings.email_verification_ttl_minutes
    data = _base_template_data(settings, user_name)
    data.update(
        {
            "verification_code": code,
            "current_email": current_email,
            "new_email": new_email,
            "expiry_minutes": ttl,
        }
    )
    content = (
        f"Hello {user_name},\n\n"
        f"Use the code below to confirm {new_email} as your new email address:\n\n"
        f"{code}\n\n"
        f"The code expires in {ttl} minutes. If you didn't ask to change your "
        "email, you can ignore this message."
    )
    return Notification(
        subject=f"Verify your new {settings.app_name} email",
        content=content,
        template_data=data,
    )


def password_changed_notification(settings: Settings, *, user_name: str) -> Notification:
    data = _base_template_data(settings, user_name)
    content = (
        f"Hello {user_name},\n\n"
        f"The password on your {settings.app_name} account was just changed. "
        "If you didn't make this change, please contact support immediately:\n\n"
        f"{data['support_link']}"
    )
    return Notification(
        subject=f"Your {settings.app_name} password was changed",
        content=content,
        template_data=data,
    )


def dispatch_best_effort(
    notifier: Optional[NotificationDispatcher],
    recipient: str,
    notification: Notification,
    *,
    kind: str,
) -> bool:
    """Send ``notification`` without letting delivery failures escape."""
    if notifier is None:
        logger.warning("notification_skipped_no_dispatcher", kind=kind)
        return False
    try:
        sent = notifier.send_notification(
            recipient,
            notification.subject,
            notification.content,
            notification.template_data,
        )
    except Exception as exc:
        logger.error(
            "notification_dispatch_failed",
            kind=kind,
            to=_redact_email(recipient),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    if not sent:
        logger.warning("notification_not_delivered", kind=kind, to=_redact_email(recipient))
    return bool(sent)


class EmailNotificationDispatcher:
    """SMTP-backed dispatcher.

    Falls back to logging the message when SMTP is not configured (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "GateHide",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotificationDispatcher":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _render_html(self, subject: str, content: str, template_data: Dict[str, Any]) -> str:
        paragraphs = "".join(
            f"<p>{html.escape(block).replace(chr(10), '<br>')}</p>"
            for block in content.split("\n\n")
        )
        footer = html.escape(str(template_data.get("app_name", self.from_name)))
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(subject)}</h1>
        {paragraphs}
        <div class="footer">
            <p>{footer}</p>
        </div>
    </div>
</body>
</html>
"""

    def send_notification(
        self,
        recipient: str,
        subject: str,
        content: str,
        template_data: Dict[str, Any],
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=_redact_email(recipient),
                subject=subject,
                body_preview=content[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = recipient
            msg.attach(MIMEText(content, "plain"))
            msg.attach(MIMEText(self._render_html(subject, content, template_data), "html"))

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=_redact_email(recipient),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())

            logger.info("email_sent", to=_redact_email(recipient), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(recipient),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=_redact_email(recipient),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(recipient),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=_redact_email(recipient),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
