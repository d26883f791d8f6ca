"""
SMTP controller for sending emails.
"""

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart

from mailsync.controllers.adapters.circuit_breaker import CircuitBreakerRegistry
from mailsync.controllers.credentials.credential_store import CredentialStore, PasswordCredential
from mailsync.exceptions import AuthExpiredError, InvalidDataError, PermanentProtocolError, TransientNetworkError
from mailsync.models.account import EmailAccount
from settings import settings


@dataclass
class _SMTPConfig:
    host: str
    port: int
    use_ssl: bool


class SMTPController:
    """Sends prepared MIME messages over SMTP.

    smtplib is blocking, so each session runs in a worker thread. The socket
    timeout bounds how long that thread can outlive a cancelled caller.
    """

    def __init__(self, credential_store: CredentialStore, breakers: CircuitBreakerRegistry) -> None:
        self._logger = logging.getLogger(__name__)
        self._credential_store = credential_store
        self._breakers = breakers

    async def send_message(self, account: EmailAccount, message: MIMEMultipart, recipients: list[str]) -> None:
        config = self._get_smtp_config(account)
        credential = self._credential_store.get_password_credential(account)

        async with self._breakers.get(config.host).guard():
            await asyncio.to_thread(self._send_blocking, config, credential, account.email_address, message, recipients)

        self._logger.info(f"Email sent via {config.host} for account {account.id}: {message['Message-ID']}")

    async def verify_login(self, account: EmailAccount) -> None:
        config = self._get_smtp_config(account)
        credential = self._credential_store.get_password_credential(account)
        await asyncio.to_thread(self._login_blocking, config, credential)

    def _get_smtp_config(self, account: EmailAccount) -> _SMTPConfig:
        if not account.smtp_host:
            raise InvalidDataError("SMTP host is required")
        port = account.smtp_port or (465 if account.smtp_secure else 587)
        return _SMTPConfig(host=account.smtp_host, port=port, use_ssl=account.smtp_secure and port == 465)

    def _connect(self, config: _SMTPConfig) -> smtplib.SMTP:
        timeout = settings.smtp.timeout
        if config.use_ssl:
            return smtplib.SMTP_SSL(config.host, config.port, timeout=timeout)
        server = smtplib.SMTP(config.host, config.port, timeout=timeout)
        server.starttls()
        return server

    def _login_blocking(self, config: _SMTPConfig, credential: PasswordCredential) -> None:
        try:
            server = self._connect(config)
            try:
                server.login(credential.username, credential.password)
            finally:
                server.quit()
        except Exception as e:
            raise self._translate(e, config)

    def _send_blocking(
        self,
        config: _SMTPConfig,
        credential: PasswordCredential,
        sender: str,
        message: MIMEMultipart,
        recipients: list[str],
    ) -> None:
        try:
            server = self._connect(config)
            try:
                server.login(credential.username, credential.password)
                refused = server.sendmail(sender, recipients, message.as_string())
            finally:
                server.quit()
        except Exception as e:
            raise self._translate(e, config)

        if refused:
            self._logger.warning(f"SMTP server {config.host} refused recipients: {sorted(refused)}")

    def _translate(self, error: Exception, config: _SMTPConfig) -> Exception:
        if isinstance(error, smtplib.SMTPAuthenticationError):
            return AuthExpiredError(f"SMTP login rejected by {config.host}")
        if isinstance(error, smtplib.SMTPRecipientsRefused):
            return PermanentProtocolError(f"All recipients refused by {config.host}")
        if isinstance(error, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
            return TransientNetworkError(f"SMTP connection to {config.host} failed: {error}")
        if isinstance(error, smtplib.SMTPResponseException):
            if 400 <= error.smtp_code < 500:
                return TransientNetworkError(f"{config.host} deferred the message: {error.smtp_code}")
            return PermanentProtocolError(f"{config.host} rejected the message: {error.smtp_code}")
        if isinstance(error, smtplib.SMTPException):
            return PermanentProtocolError(f"SMTP error from {config.host}: {error}")
        if isinstance(error, OSError):
            return TransientNetworkError(f"SMTP connection to {config.host} failed: {error}")
        return error
