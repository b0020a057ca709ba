"""
SMTP Email Sender

Sends messages for IMAP/SMTP accounts and verifies SMTP credentials.
Errors propagate as MailBridge errors; a send is never reported as
successful unless the server accepted it.
"""
import logging
import smtplib
import socket
from typing import List

from mailbridge.core.errors import AuthExpired, ProviderUnavailable, RemoteBackendError
from .mime import build_mime_message
from .models import OutgoingMessage

logger = logging.getLogger(__name__)

BACKEND = "smtp"


class SMTPSender:
    """Send emails via SMTP."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_username: str,
        smtp_password: str,
        from_email: str,
        from_name: str = "",
        use_tls: bool = True,
        timeout: int = 10
    ):
        """
        Initialize SMTP sender.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port (587 for STARTTLS, 465 for SSL)
            smtp_username: SMTP username (usually same as email)
            smtp_password: SMTP password or app-specific password
            from_email: Email address for From field
            from_name: Display name for From field
            use_tls: STARTTLS on a plain connection; False means implicit SSL
            timeout: Connect/auth timeout in seconds
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    def _open(self) -> smtplib.SMTP:
        try:
            if self.use_tls:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
                server.starttls()
            else:
                server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=self.timeout)
        except smtplib.SMTPException as e:
            raise RemoteBackendError(f"SMTP handshake failed: {e}", backend=BACKEND) from e
        except (socket.timeout, OSError) as e:
            logger.error(f"Cannot reach SMTP server {self.smtp_host}:{self.smtp_port}: {e}")
            raise ProviderUnavailable(f"Cannot reach SMTP server {self.smtp_host}: {e}", backend=BACKEND) from e

        try:
            server.login(self.smtp_username, self.smtp_password)
        except smtplib.SMTPAuthenticationError as e:
            server.close()
            raise AuthExpired(f"SMTP login failed for {self.smtp_username}", backend=BACKEND) from e
        except smtplib.SMTPException as e:
            server.close()
            raise RemoteBackendError(f"SMTP login error: {e}", backend=BACKEND) from e
        return server

    def verify(self) -> bool:
        """Connect and authenticate without sending; raises on failure."""
        server = self._open()
        try:
            server.noop()
        finally:
            server.quit()
        logger.info(f"SMTP connection verified for {self.smtp_username}")
        return True

    def send(self, outgoing: OutgoingMessage) -> str:
        """
        Send a message.

        Returns:
            Message-ID of the sent email

        Raises:
            AuthExpired, ProviderUnavailable, RemoteBackendError
        """
        msg, message_id = build_mime_message(outgoing, self.from_email, self.from_name)

        recipients: List[str] = list(outgoing.to) + list(outgoing.cc) + list(outgoing.bcc)
        if 'Bcc' in msg:
            del msg['Bcc']

        server = self._open()
        try:
            server.send_message(msg, from_addr=self.from_email, to_addrs=recipients)
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error sending email to {outgoing.to}: {e}", exc_info=True)
            raise RemoteBackendError(f"SMTP send failed: {e}", backend=BACKEND) from e
        except (socket.timeout, OSError) as e:
            raise ProviderUnavailable(f"SMTP connection lost: {e}", backend=BACKEND) from e
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                server.close()

        logger.info(f"Email sent successfully to {', '.join(outgoing.to)}: {outgoing.subject}")
        logger.debug(f"Message-ID: {message_id}")
        return message_id
