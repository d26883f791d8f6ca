"""
Account controller: linking, listing, disabling and removing mailboxes.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from mailsync.controllers.adapters.registry import AdapterRegistry
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.controllers.credentials.oauth_client import OAuthTokenClient
from mailsync.controllers.sync.scheduler import SyncScheduler
from mailsync.controllers.sync.syncer import AccountSyncer, SyncReport
from mailsync.exceptions import EntityAlreadyExistError, EntityNotFoundError, InvalidDataError, ProtocolError
from mailsync.models.account import EmailAccount, ProviderKind
from mailsync.models.base import utcnow
from mailsync.models.sync_health import SyncHealth
from mailsync.repos.account import AccountRepo
from mailsync.repos.sync_health import SyncHealthRepo
from mailsync.utils.password import PasswordUtils
from settings import settings


@dataclass
class AccountLink:
    """Everything needed to link a mailbox. OAuth2 fields or IMAP/SMTP fields, by provider."""

    email_address: str
    account_name: str | None = None

    authorization_code: str | None = None
    redirect_uri: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None

    imap_host: str | None = None
    imap_port: int | None = None
    imap_secure: bool = True
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_secure: bool = True
    username: str | None = None
    password: str | None = None

    is_default: bool = False
    sync_enabled: bool = True
    sync_frequency_seconds: int | None = None
    inbox_folder: str | None = None
    sent_folder: str | None = None
    drafts_folder: str | None = None
    trash_folder: str | None = None


@dataclass
class AccountOverview:
    account: EmailAccount
    health: SyncHealth | None = None


class AccountController:
    """Controller for mailbox account operations."""

    def __init__(
        self,
        account_repo: AccountRepo,
        sync_health_repo: SyncHealthRepo,
        adapters: AdapterRegistry,
        credential_store: CredentialStore,
        oauth_client: OAuthTokenClient,
        scheduler: SyncScheduler,
        syncer: AccountSyncer,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._sync_health_repo = sync_health_repo
        self._adapters = adapters
        self._credential_store = credential_store
        self._oauth_client = oauth_client
        self._scheduler = scheduler
        self._syncer = syncer

    async def list_accounts(self, user_id: str) -> list[AccountOverview]:
        """The user's accounts, each with its sync health so persistent failures can be shown."""
        accounts = await self._account_repo.list_for_user(user_id)
        health = {
            row.email_account_id: row
            for row in await self._sync_health_repo.list_for_accounts([account.id for account in accounts])
        }
        return [AccountOverview(account, health.get(account.id)) for account in accounts]

    async def get_account(self, user_id: str, account_uuid: UUID) -> EmailAccount:
        account = await self._account_repo.get_for_user(user_id, account_uuid)
        if account is None:
            raise EntityNotFoundError(f"Account {account_uuid} not found", user=user_id)
        return account

    async def link_account(self, user_id: str, provider: ProviderKind, link: AccountLink) -> EmailAccount:
        """Create or re-link an account, verify it works against the provider, then start syncing it."""
        email_address = link.email_address.strip().lower()
        account = await self._account_repo.get_by_user_and_address(user_id, email_address)
        is_new = account is None
        if account is None:
            account = EmailAccount(user_id=user_id, email_address=email_address, provider=provider)
        elif account.provider is not provider:
            raise EntityAlreadyExistError(
                f"{email_address} is already linked as a {account.provider.value} account", user=user_id
            )

        self._apply_settings(account, link)
        if provider.uses_oauth:
            await self._apply_oauth_credentials(account, provider, link)
        else:
            self._apply_password_credentials(account, link)

        if link.is_default or (is_new and not await self._account_repo.list_for_user(user_id)):
            await self._account_repo.clear_default(user_id)
            account.is_default = True

        await self._account_repo.add(account)
        account_id = account.id
        self._credential_store.invalidate(account_id)

        try:
            verified_address = await self._adapters.for_account(account).verify(account)
            if verified_address.lower() != email_address:
                raise InvalidDataError(f"Credentials belong to {verified_address}, not {email_address}")
        except (ProtocolError, InvalidDataError):
            self._logger.warning(f"Verification failed while linking {email_address} for user {user_id}")
            # Nothing of a rejected link is kept, neither a new row nor changes to an existing one.
            await self._account_repo.rollback()
            self._credential_store.invalidate(account_id)
            raise

        await self._account_repo.commit()
        self._logger.info(f"Linked {provider.value} account {account.id} for user {user_id}")

        if self._scheduler_in_process() and account.should_sync:
            self._scheduler.add_account(account.id, account.sync_frequency_seconds)
        return account

    async def disable_account(self, user_id: str, account_uuid: UUID) -> EmailAccount:
        """Soft-disable: stop syncing now and refuse sends. Messages are kept."""
        account = await self.get_account(user_id, account_uuid)
        await self._account_repo.update(account, {"is_active": False}, commit=True)
        self._credential_store.invalidate(account.id)
        await self._scheduler.remove_account(account.id)
        self._logger.info(f"Disabled account {account.id} for user {user_id}")
        return account

    async def remove_account(self, user_id: str, account_uuid: UUID) -> None:
        """Delete the account together with its messages, rate windows and sync health."""
        account = await self.get_account(user_id, account_uuid)
        await self._scheduler.remove_account(account.id)
        self._credential_store.invalidate(account.id)
        await self._account_repo.delete(account)
        await self._account_repo.commit()
        self._logger.info(f"Removed account {account.id} for user {user_id}")

    async def sync_now(self, user_id: str, account_uuid: UUID) -> SyncReport | None:
        """Sync immediately. None when a sync for the account is already running."""
        account = await self.get_account(user_id, account_uuid)
        if not account.should_sync:
            raise InvalidDataError(f"Sync is disabled for account {account_uuid}")

        if self._scheduler.is_registered(account.id):
            if not await self._scheduler.trigger(account.id):
                return None
            result = self._scheduler.status()[account.id].last_result
            return result if isinstance(result, SyncReport) else None
        return await self._syncer.sync_exclusive(account)

    def _scheduler_in_process(self) -> bool:
        return settings.sync.run_in_api

    def _apply_settings(self, account: EmailAccount, link: AccountLink) -> None:
        account.account_name = link.account_name or account.account_name or link.email_address
        account.is_active = True
        account.sync_enabled = link.sync_enabled
        account.sync_frequency_seconds = max(
            settings.sync.min_frequency_seconds, link.sync_frequency_seconds or settings.sync.default_frequency_seconds
        )
        if account.is_default is None:
            account.is_default = False
        account.inbox_folder = link.inbox_folder or account.inbox_folder or "INBOX"
        account.sent_folder = link.sent_folder or account.sent_folder or "SENT"
        account.drafts_folder = link.drafts_folder or account.drafts_folder or "DRAFTS"
        account.trash_folder = link.trash_folder or account.trash_folder or "TRASH"

    async def _apply_oauth_credentials(self, account: EmailAccount, provider: ProviderKind, link: AccountLink) -> None:
        if link.authorization_code:
            grant = await self._oauth_client.exchange_code(provider, link.authorization_code, link.redirect_uri)
            access_token, refresh_token, expires_in = grant.access_token, grant.refresh_token, grant.expires_in
        elif link.refresh_token:
            access_token, refresh_token, expires_in = link.access_token, link.refresh_token, link.expires_in
        else:
            raise InvalidDataError("An authorization code or a refresh token is required")

        if not refresh_token and not account.refresh_token:
            raise InvalidDataError("The provider did not return a refresh token; grant offline access")

        if refresh_token:
            account.refresh_token = PasswordUtils.encrypt_secret(refresh_token)
        if access_token and expires_in:
            account.access_token = PasswordUtils.encrypt_secret(access_token)
            account.token_expires_at = utcnow() + timedelta(seconds=expires_in)
        else:
            account.access_token = None
            account.token_expires_at = None
        account.imap_secure = True
        account.smtp_secure = True

    def _apply_password_credentials(self, account: EmailAccount, link: AccountLink) -> None:
        if not link.imap_host or not link.smtp_host:
            raise InvalidDataError("IMAP and SMTP hosts are required")
        if not link.password and not account.password:
            raise InvalidDataError("A password is required")

        account.imap_host = link.imap_host
        account.imap_port = link.imap_port or (993 if link.imap_secure else 143)
        account.imap_secure = link.imap_secure
        account.smtp_host = link.smtp_host
        account.smtp_port = link.smtp_port or (465 if link.smtp_secure else 587)
        account.smtp_secure = link.smtp_secure
        account.username = link.username or account.username or link.email_address
        if link.password:
            account.password = PasswordUtils.encrypt_secret(link.password)
