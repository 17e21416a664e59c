from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Mapping, Optional

import httpx

from authcore.logging import get_logger

logger = get_logger(__name__)

MAILTRAP_SEND_URL = "https://send.api.mailtrap.io/api/send"

_OTP_COPY = {
    "register": (
        "Your {app} verification code",
        "Use the code below to finish creating your account.",
    ),
    "reset_password": (
        "Your {app} password reset code",
        "Use the code below to reset your password. If you did not ask for this, ignore this email.",
    ),
}


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP delivery of one-time codes.

    ``template_id`` is resolved to a purpose through ``template_purposes``
    (template id -> "register" / "reset_password") to pick subject and copy.
    Without an SMTP host and sender address nothing is sent and delivery
    reports failure.
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
        from_name: str = "Invento",
        expiry_minutes: int = 10,
        template_purposes: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.expiry_minutes = expiry_minutes
        self.template_purposes = dict(template_purposes or {})

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send_otp_email(self, email: str, code: str, template_id: str) -> bool:
        purpose = self.template_purposes.get(template_id, template_id)
        subject_tpl, intro = _OTP_COPY.get(purpose, _OTP_COPY["register"])
        subject = subject_tpl.format(app=self.from_name)
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <h1>{subject}</h1>
    <p>{intro}</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: 600;">{code}</p>
    <p>This code expires in {self.expiry_minutes} minutes.</p>
</body>
</html>
"""
        text_body = (
            f"{subject}\n\n{intro}\n\n{code}\n\n"
            f"This code expires in {self.expiry_minutes} minutes.\n"
        )
        return self._send_email(email, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP; returns True if sent successfully."""
        if not self.is_configured:
            logger.warning(
                "email_not_configured",
                to=_redact_email(to_email),
                subject=subject,
            )
            return False

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
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=_redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=_redact_email(to_email), subject=subject)
        return True


class MailtrapSender:
    """Delivery through the Mailtrap template API.

    The code is passed under several variable names so templates written
    against any of them render it.
    """

    def __init__(
        self,
        api_token: str,
        *,
        from_email: str,
        from_name: str = "Invento",
        url: str = MAILTRAP_SEND_URL,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_token = api_token
        self.from_email = from_email
        self.from_name = from_name
        self.url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        self._client.close()

    def send_otp_email(self, email: str, code: str, template_id: str) -> bool:
        payload = {
            "from": {"email": self.from_email, "name": self.from_name},
            "to": [{"email": email}],
            "template_uuid": template_id,
            "template_variables": {
                "otp_code": code,
                "otp": code,
                "code": code,
                "otpCode": code,
            },
        }
        try:
            response = self._client.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_token}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "mailtrap_api_error",
                to=_redact_email(email),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "mailtrap_transport_error",
                to=_redact_email(email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("mailtrap_email_sent", to=_redact_email(email), template_id=template_id)
        return True
