import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Callable

from mailsync.controllers.credentials.oauth_client import OAuthTokenClient
from mailsync.db import session_scope
from mailsync.exceptions import AuthExpiredError, InvalidDataError
from mailsync.models.account import EmailAccount
from mailsync.models.base import utcnow
from mailsync.repos.account import AccountRepo
from mailsync.utils.password import PasswordUtils
from settings import settings


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime | None


@dataclass(frozen=True)
class PasswordCredential:
    username: str
    password: str


class CredentialStore:
    """Hands out usable credentials per account.

    OAuth2 tokens are cached in memory and refreshed when they are within the
    safety margin of expiring. Refresh is single-flighted per account: callers
    arriving while a refresh is running await the same task.
    """

    def __init__(
        self,
        account_repo: AccountRepo,
        oauth_client: OAuthTokenClient,
        refresh_margin_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
        session_scope: Callable[[], AbstractAsyncContextManager[None]] = session_scope,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._oauth_client = oauth_client
        margin = refresh_margin_seconds
        if margin is None:
            margin = settings.oauth.token_refresh_margin_seconds
        self._margin = timedelta(seconds=margin)
        self._clock = clock
        self._session_scope = session_scope

        self._cache: dict[int, AccessToken] = {}
        self._inflight: dict[int, asyncio.Task[AccessToken]] = {}

    async def get_valid_token(self, account: EmailAccount) -> AccessToken:
        if not account.provider.uses_oauth:
            raise InvalidDataError(f"Account {account.id} does not use OAuth2")

        cached = self._cache.get(account.id)
        if cached is not None and self._is_fresh(cached.expires_at):
            return cached

        if account.access_token and self._is_fresh(account.token_expires_at):
            token = AccessToken(PasswordUtils.decrypt_secret(account.access_token), account.token_expires_at)
            self._cache[account.id] = token
            return token

        return await self._refresh_once(account)

    async def force_refresh(self, account: EmailAccount) -> AccessToken:
        """Refresh even if the cached token looks valid. Used after the provider rejects it."""
        self.invalidate(account.id)
        return await self._refresh_once(account)

    def get_password_credential(self, account: EmailAccount) -> PasswordCredential:
        if not account.password:
            raise AuthExpiredError(f"No stored password for account {account.id}", account_id=account.id)
        return PasswordCredential(
            username=account.username or account.email_address,
            password=PasswordUtils.decrypt_secret(account.password),
        )

    def invalidate(self, account_id: int) -> None:
        self._cache.pop(account_id, None)

    def is_refreshing(self, account_id: int) -> bool:
        return account_id in self._inflight

    def _is_fresh(self, expires_at: datetime | None) -> bool:
        if expires_at is None:
            return False
        return expires_at - self._margin > self._clock()

    async def _refresh_once(self, account: EmailAccount) -> AccessToken:
        task = self._inflight.get(account.id)
        if task is None:
            task = asyncio.create_task(self._refresh(account), name=f"token-refresh-{account.id}")
            self._inflight[account.id] = task
            task.add_done_callback(partial(self._forget, account.id))
        # A cancelled caller must not cancel the refresh other callers are waiting on.
        return await asyncio.shield(task)

    def _forget(self, account_id: int, task: asyncio.Task[AccessToken]) -> None:
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]
        if not task.cancelled() and task.exception() is not None:
            self._logger.warning(f"Token refresh failed for account {account_id}: {task.exception()}")

    async def _refresh(self, account: EmailAccount) -> AccessToken:
        if not account.refresh_token:
            raise AuthExpiredError(f"Account {account.id} has no refresh token", account_id=account.id)

        self._logger.info(f"Refreshing {account.provider.value} token for account {account.id}")
        grant = await self._oauth_client.refresh(account.provider, PasswordUtils.decrypt_secret(account.refresh_token))
        expires_at = self._clock() + timedelta(seconds=grant.expires_in)
        access_token = PasswordUtils.encrypt_secret(grant.access_token)
        refresh_token = PasswordUtils.encrypt_secret(grant.refresh_token) if grant.refresh_token else None

        # Outlives any single caller, so it cannot write through a caller's session.
        async with self._session_scope():
            stored = await self._account_repo.store_tokens(account.id, access_token, expires_at, refresh_token)
        if not stored:
            self._logger.debug(f"Account {account.id} is locked by its own transaction, which saves the new tokens")

        account.access_token = access_token
        account.token_expires_at = expires_at
        if refresh_token is not None:
            account.refresh_token = refresh_token

        token = AccessToken(grant.access_token, expires_at)
        self._cache[account.id] = token
        return token
