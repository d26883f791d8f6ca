import logging
import uuid
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from mailsync.controllers.adapters.base import Cursor, ProtocolAdapter
from mailsync.controllers.adapters.registry import AdapterRegistry
from mailsync.controllers.credentials.auth_retry import AuthRetryContext, with_auth_retry
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.controllers.sync.deduplicator import Deduplicator, PersistOutcome
from mailsync.controllers.sync.thread_assembler import ThreadAssembler
from mailsync.db import session_scope
from mailsync.exceptions import AccountInactiveError, ProtocolError
from mailsync.models.account import EmailAccount
from mailsync.models.base import utcnow
from mailsync.models.message import EmailMessage
from mailsync.repos.account import AccountRepo
from mailsync.repos.message import MessageRepo
from mailsync.repos.sync_health import SyncHealthRepo
from settings import settings


@dataclass
class SyncReport:
    account_id: int
    fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    confirmed: int = 0
    skipped: int = 0
    reconciled: int = 0
    dropped: int = 0
    cursor: str | None = None


class AccountSyncer:
    """One sync run for one account.

    Reconciles interrupted sends, fetches the next batch, and persists it in
    adapter order. The cursor is committed together with each message, then
    moved to the batch cursor once the whole batch is processed. Any error
    leaves the cursor at the last message that was durably handled.

    Runs started through `run` or `sync_exclusive` first take the account's
    sync lease in the database, so the API and the standalone watcher never
    sync the same account at the same time.
    """

    def __init__(
        self,
        account_repo: AccountRepo,
        message_repo: MessageRepo,
        sync_health_repo: SyncHealthRepo,
        adapters: AdapterRegistry,
        credential_store: CredentialStore,
        deduplicator: Deduplicator,
        thread_assembler: ThreadAssembler,
        max_batch: int | None = None,
        lease_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
        session_scope: Callable[[], AbstractAsyncContextManager[None]] = session_scope,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._message_repo = message_repo
        self._sync_health_repo = sync_health_repo
        self._adapters = adapters
        self._credentials = credential_store
        self._deduplicator = deduplicator
        self._threads = thread_assembler
        self._max_batch = max_batch or settings.sync.max_batch
        self._lease_seconds = lease_seconds or settings.sync.lease_seconds
        self._clock = clock
        self._session_scope = session_scope

    async def run(self, account_id: int) -> SyncReport | None:
        """Sync an account in its own session and record the outcome in its sync health.

        Returns None when the account is already being synced elsewhere.
        """
        try:
            async with self._session_scope():
                account = await self._account_repo.get(account_id)
                if account is None or not account.should_sync:
                    raise AccountInactiveError(f"Account {account_id} is not active for sync", account_id=account_id)
                report = await self.sync_exclusive(account)
                if report is not None:
                    await self._sync_health_repo.record_success(account_id, self._clock())
                return report
        except ProtocolError as e:
            async with self._session_scope():
                health = await self._sync_health_repo.record_failure(
                    account_id, e.message, self._clock(), settings.sync.failure_flag_threshold
                )
            if health.is_flagged:
                self._logger.error(
                    f"Sync for account {account_id} flagged after {health.consecutive_failures} failures: {e.message}"
                )
            raise

    async def sync_exclusive(self, account: EmailAccount) -> SyncReport | None:
        """`sync` under the account's lease. None when another run holds the lease."""
        owner = uuid.uuid4().hex
        async with self._session_scope():
            claimed = await self._sync_health_repo.claim_lease(account.id, owner, self._clock(), self._lease_seconds)
        if not claimed:
            self._logger.info(f"Sync for account {account.id} is already running, skipping")
            return None
        try:
            return await self.sync(account)
        finally:
            async with self._session_scope():
                await self._sync_health_repo.release_lease(account.id, owner)

    async def sync(self, account: EmailAccount) -> SyncReport:
        adapter = self._adapters.for_account(account)
        report = SyncReport(account_id=account.id)

        await self._reconcile_pending(account, adapter, report)

        cursor = Cursor(account.sync_cursor)
        result = await with_auth_retry(
            self._credentials,
            account,
            lambda: adapter.fetch(account, cursor, self._max_batch),
            AuthRetryContext(operation="fetch"),
        )
        report.fetched = len(result.messages)
        report.skipped = len(result.skipped)

        for raw in result.messages:
            # Disabling from another process takes effect before the next message.
            if not await self._account_repo.is_syncable(account.id):
                self._logger.info(f"Account {account.id} was disabled, stopping sync at cursor {account.sync_cursor}")
                raise AccountInactiveError(f"Account {account.id} was disabled during sync", account_id=account.id)
            outcome = await self._deduplicator.persist(account, raw, raw.position)
            if outcome is PersistOutcome.stored:
                report.stored += 1
            elif outcome is PersistOutcome.confirmed:
                report.confirmed += 1
            else:
                report.duplicates += 1

        new_cursor = result.cursor.value if not result.cursor.is_empty else account.sync_cursor
        await self._account_repo.update_sync_progress(account, new_cursor, synced_at=self._clock())
        await self._account_repo.commit()
        report.cursor = new_cursor

        if report.fetched or report.skipped:
            self._logger.info(
                f"Synced account {account.id}: {report.stored} stored, {report.duplicates} duplicates, "
                f"{report.skipped} skipped, cursor {report.cursor}"
            )
        return report

    async def _reconcile_pending(self, account: EmailAccount, adapter: ProtocolAdapter, report: SyncReport) -> None:
        """Confirm or drop sends whose outcome was unknown when they were interrupted."""
        pending = await self._message_repo.get_pending_reconciliation(account.id)
        if not pending:
            return

        cutoff = self._clock() - timedelta(hours=settings.sync.reconciliation_max_age_hours)
        for message in pending:
            if not message.rfc_message_id:
                continue
            rfc_message_id = message.rfc_message_id
            external_id = await with_auth_retry(
                self._credentials,
                account,
                lambda: adapter.find_sent(account, rfc_message_id),
                AuthRetryContext(operation="reconcile"),
            )

            if external_id and await self._message_repo.exists_for_account(account.id, external_id):
                # Already fetched as its own row.
                await self._drop_pending(account, message)
                report.reconciled += 1
            elif external_id:
                await self._message_repo.confirm_sent(message, external_id)
                report.reconciled += 1
            elif message.created_at < cutoff:
                self._logger.warning(f"Dropping unconfirmed send {rfc_message_id} for account {account.id}")
                await self._drop_pending(account, message)
                report.dropped += 1

    async def _drop_pending(self, account: EmailAccount, message: EmailMessage) -> None:
        async with self._threads.lock(account.user_id):
            await self._message_repo.delete(message)
            await self._threads.detach_message(message.thread_id)
            await self._message_repo.commit()
