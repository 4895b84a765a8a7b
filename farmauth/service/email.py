from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

from farmauth.logging import get_logger, redact_value

logger = get_logger(__name__)


class EmailService:
    """SMTP sender for one-time passcodes.

    Without an SMTP host the message is only logged, so local development
    can read codes from the console.
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
        from_name: str = "FarmConnect",
        timeout: float = 10.0,
    ) -> None:
        self.host = smtp_host
        self.port = smtp_port
        self.username = smtp_user
        self.password = smtp_password
        # STARTTLS on a plain connection; False means implicit TLS (SMTPS)
        self.starttls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.sender_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def _build(self, to_email: str, subject: str, text_body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.sender_name, self.sender))
        message["To"] = to_email
        message.set_content(text_body)
        return message

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.starttls:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP_SSL(
                self.host, self.port, context=context, timeout=self.timeout
            )
        try:
            if self.starttls:
                server.starttls(context=context)
            if self.username and self.password:
                server.login(self.username, self.password)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def send(self, to_email: str, subject: str, text_body: str) -> bool:
        """Deliver a plain-text message. Returns False if SMTP refused it."""
        recipient = redact_value(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode", recipient=recipient, subject=subject, body=text_body
            )
            return True

        message = self._build(to_email, subject, text_body)
        try:
            with self._connect(ssl.create_default_context()) as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=recipient)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError covers refused connections and socket timeouts
            logger.error(
                "email_send_failed",
                recipient=recipient,
                host=self.host,
                port=self.port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=recipient)
        return True
