import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from aioimaplib import IMAP4, IMAP4_SSL
from aioimaplib.aioimaplib import Abort, CommandTimeout

from mailsync.controllers.adapters.circuit_breaker import CircuitBreakerRegistry
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.exceptions import AuthExpiredError, InvalidDataError, PermanentProtocolError, TransientNetworkError
from mailsync.models.account import EmailAccount
from settings import settings

IMAP_NETWORK_ERRORS = (asyncio.TimeoutError, OSError, Abort, CommandTimeout)


class TokenBucket:
    """Token bucket throttle for IMAP commands against one host."""

    def __init__(self, rate: float, burst: int | None = None):
        self._rate = rate
        self._burst = burst or max(1, int(rate * 2))
        self._tokens = float(self._burst)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: int = 1) -> None:
        """Take tokens from the bucket, waiting if necessary."""
        async with self._lock:
            now = time.monotonic()
            self._tokens = min(self._burst, self._tokens + (now - self._last_update) * self._rate)
            self._last_update = now

            if self._tokens >= tokens:
                self._tokens -= tokens
                return

            await asyncio.sleep((tokens - self._tokens) / self._rate)
            self._tokens = 0
            self._last_update = time.monotonic()


class ConnectionManager:
    """Opens authenticated IMAP connections with per-host limits, throttling and circuit breaking."""

    def __init__(self, credential_store: CredentialStore, breakers: CircuitBreakerRegistry) -> None:
        self._logger = logging.getLogger(__name__)
        self._credential_store = credential_store
        self._breakers = breakers
        self._buckets: dict[str, TokenBucket] = {}
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    def _host_limits(self, host: str) -> tuple[asyncio.Semaphore, TokenBucket]:
        if host not in self._semaphores:
            limit = settings.imap.connections_per_host
            self._semaphores[host] = asyncio.Semaphore(limit)
            self._buckets[host] = TokenBucket(rate=settings.imap.requests_per_second, burst=limit)
        return self._semaphores[host], self._buckets[host]

    @asynccontextmanager
    async def connection(self, account: EmailAccount, folder: str | None = None) -> AsyncGenerator[IMAP4, None]:
        """Yield a logged-in connection, with `folder` selected when given. Always logs out."""
        if not account.imap_host:
            raise InvalidDataError(f"Account {account.id} has no IMAP host configured")

        semaphore, bucket = self._host_limits(account.imap_host)
        await bucket.acquire()
        async with semaphore:
            async with self._breakers.get(account.imap_host).guard():
                connection = await self._open(account, folder)
                try:
                    yield connection
                except IMAP_NETWORK_ERRORS as e:
                    raise TransientNetworkError(f"IMAP connection to {account.imap_host} failed: {e}")
                finally:
                    await self.close_connection(connection, account)

    async def _open(self, account: EmailAccount, folder: str | None) -> IMAP4:
        host = account.imap_host or ""
        credential = self._credential_store.get_password_credential(account)
        try:
            if account.imap_secure:
                connection: IMAP4 = IMAP4_SSL(host=host, port=account.imap_port or 993, timeout=settings.imap.timeout)
            else:
                connection = IMAP4(host=host, port=account.imap_port or 143, timeout=settings.imap.timeout)
            await connection.wait_hello_from_server()
            response = await connection.login(credential.username, credential.password)
        except IMAP_NETWORK_ERRORS as e:
            raise TransientNetworkError(f"Could not connect to {host}: {e}")

        if response.result != "OK":
            self._logger.warning(f"IMAP login rejected by {host} for account {account.id}: {response.result}")
            await self.close_connection(connection, account)
            raise AuthExpiredError(f"IMAP login rejected by {host}", account_id=account.id)

        if folder:
            try:
                selected = await connection.select(folder)
            except IMAP_NETWORK_ERRORS as e:
                await self.close_connection(connection, account)
                raise TransientNetworkError(f"Could not select {folder} on {host}: {e}")
            if selected.result != "OK":
                await self.close_connection(connection, account)
                raise PermanentProtocolError(f"Folder {folder} cannot be selected on {host}")

        self._logger.debug(f"Opened IMAP connection for account {account.id}:{folder}")
        return connection

    async def close_connection(self, connection: IMAP4, account: EmailAccount) -> None:
        try:
            await asyncio.wait_for(connection.logout(), timeout=5)
        except asyncio.TimeoutError:
            self._logger.warning(f"Timeout closing IMAP connection for account {account.id}")
        except IMAP_NETWORK_ERRORS as e:
            self._logger.debug(f"Error closing IMAP connection for account {account.id}: {e}")
