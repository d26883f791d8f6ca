"""
In-memory stand-ins for the repositories, the OAuth client and a provider adapter.

They keep the call shapes of the real classes, so controllers run unchanged
without a database or network.
"""

import asyncio
import itertools
from datetime import datetime, timedelta
from typing import Any, Generic, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError, OperationalError

from mailsync.controllers.adapters.base import (
    Cursor,
    FetchResult,
    OutboundDraft,
    ProtocolAdapter,
    RawMessage,
    SkippedMessage,
)
from mailsync.controllers.credentials.oauth_client import TokenGrant
from mailsync.exceptions import PermanentProtocolError
from mailsync.models.account import EmailAccount, ProviderKind
from mailsync.models.base import Base, utcnow
from mailsync.models.message import EmailAttachment, EmailMessage
from mailsync.models.rate_limit import RateLimitWindow, RateWindowKind
from mailsync.models.sync_health import SyncHealth
from mailsync.models.thread import EmailThread
from mailsync.repos.thread import ThreadFilters
from mailsync.utils.password import PasswordUtils

ModelT = TypeVar("ModelT", bound=Base)

_ids = itertools.count(1)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_account(**overrides: Any) -> EmailAccount:
    values: dict[str, Any] = {
        "user_id": "user-1",
        "account_name": "Me",
        "email_address": "me@example.com",
        "provider": ProviderKind.smtp,
        "access_token": PasswordUtils.encrypt_secret("token-0"),
        "refresh_token": PasswordUtils.encrypt_secret("refresh-0"),
        "token_expires_at": None,
        "imap_host": "imap.example.com",
        "imap_port": 993,
        "imap_secure": True,
        "smtp_host": "smtp.example.com",
        "smtp_port": 465,
        "smtp_secure": True,
        "username": "me@example.com",
        "password": PasswordUtils.encrypt_secret("secret"),
        "is_default": True,
        "is_active": True,
        "sync_enabled": True,
        "sync_frequency_seconds": 15,
        "last_sync_at": None,
        "sync_cursor": None,
        "inbox_folder": "INBOX",
        "sent_folder": "Sent",
        "drafts_folder": "Drafts",
        "trash_folder": "Trash",
    }
    values.update(overrides)
    return EmailAccount(**values)


def make_raw(
    uid: int,
    subject: str = "Project Update",
    from_email: str = "alice@partner.com",
    to_emails: Sequence[str] = ("me@example.com",),
    sent_at: datetime | None = None,
    **overrides: Any,
) -> RawMessage:
    values: dict[str, Any] = {
        "external_id": f"INBOX:{uid}",
        "subject": subject,
        "from_email": from_email,
        "to_emails": list(to_emails),
        "text_body": f"Message {uid}",
        "sent_at": sent_at,
        "folder": "INBOX",
        "rfc_message_id": f"<{uid}@partner.com>",
        "position": Cursor(str(uid)),
    }
    values.update(overrides)
    return RawMessage(**values)


class FakeRepo(Generic[ModelT]):
    def __init__(self) -> None:
        self.rows: dict[int, ModelT] = {}
        self.commits = 0
        self.rollbacks = 0
        # Ids added since the last commit; a rollback drops them.
        self.uncommitted: set[int] = set()

    async def get(self, id: Any) -> ModelT | None:
        return self.rows.get(id)

    async def get_by_uuid(self, uuid: UUID) -> ModelT | None:
        return next((row for row in self.rows.values() if getattr(row, "uuid", None) == uuid), None)

    async def add(self, model: ModelT, commit: bool = False) -> None:
        if model.id is None:
            model.id = next(_ids)
        if hasattr(model, "uuid") and getattr(model, "uuid") is None:
            setattr(model, "uuid", uuid4())
        if hasattr(model, "created_at") and getattr(model, "created_at") is None:
            setattr(model, "created_at", utcnow())
        if model.id not in self.rows:
            self.uncommitted.add(model.id)
        self.rows[model.id] = model
        if commit:
            await self.commit()

    async def update(self, model: ModelT, values: dict[str, Any], commit: bool = False) -> ModelT:
        for key, value in values.items():
            setattr(model, key, value)
        if commit:
            await self.commit()
        return model

    async def delete(self, model: ModelT) -> None:
        self.rows.pop(model.id, None)

    async def commit(self) -> None:
        self.commits += 1
        self.uncommitted.clear()

    async def rollback(self) -> None:
        self.rollbacks += 1
        for id in self.uncommitted:
            self.rows.pop(id, None)
        self.uncommitted.clear()

    async def flush(self) -> None:
        return None

    async def refresh(self, model: ModelT) -> None:
        return None


class FakeAccountRepo(FakeRepo[EmailAccount]):
    def __init__(self) -> None:
        super().__init__()
        self.token_writes = 0

    async def get_for_user(self, user_id: str, uuid: UUID) -> EmailAccount | None:
        account = await self.get_by_uuid(uuid)
        return account if account is not None and account.user_id == user_id else None

    async def get_by_user_and_address(self, user_id: str, email_address: str) -> EmailAccount | None:
        return next(
            (
                account
                for account in self.rows.values()
                if account.user_id == user_id and account.email_address == email_address.lower()
            ),
            None,
        )

    async def list_for_user(self, user_id: str) -> Sequence[EmailAccount]:
        return [account for account in self.rows.values() if account.user_id == user_id]

    async def get_all_syncable(self) -> Sequence[EmailAccount]:
        return [account for account in self.rows.values() if account.should_sync]

    async def is_syncable(self, account_id: int) -> bool:
        account = self.rows.get(account_id)
        return account is not None and account.should_sync

    async def store_tokens(
        self, account_id: int, access_token: str, expires_at: datetime | None, refresh_token: str | None = None
    ) -> bool:
        self.token_writes += 1
        account = self.rows.get(account_id)
        if account is None or account_id in self.uncommitted:
            return False
        account.access_token = access_token
        account.token_expires_at = expires_at
        if refresh_token is not None:
            account.refresh_token = refresh_token
        return True

    async def update_sync_progress(
        self, account: EmailAccount, cursor: str | None, synced_at: datetime | None = None
    ) -> EmailAccount:
        values: dict[str, Any] = {"sync_cursor": cursor}
        if synced_at is not None:
            values["last_sync_at"] = synced_at
        return await self.update(account, values)

    async def clear_default(self, user_id: str) -> None:
        for account in self.rows.values():
            if account.user_id == user_id:
                account.is_default = False


class FakeMessageRepo(FakeRepo[EmailMessage]):
    def __init__(self) -> None:
        super().__init__()
        self.attachments: list[EmailAttachment] = []
        # External ids whose insert fails as if the database connection dropped.
        self.fail_on: set[str] = set()

    async def add(self, model: EmailMessage, commit: bool = False) -> None:
        if model.external_message_id in self.fail_on:
            raise OperationalError("INSERT INTO email_messages", {}, Exception("connection lost"))
        if model.external_message_id is not None and any(
            row.email_account_id == model.email_account_id and row.external_message_id == model.external_message_id
            for row in self.rows.values()
        ):
            raise IntegrityError("INSERT INTO email_messages", {}, Exception("duplicate key"))
        await super().add(model, commit)

    async def exists_for_account(self, account_id: int, external_message_id: str) -> bool:
        return any(
            row.email_account_id == account_id and row.external_message_id == external_message_id
            for row in self.rows.values()
        )

    async def find_thread_id_by_provider_thread(self, account_id: int, provider_thread_id: str) -> int | None:
        for row in self.rows.values():
            if row.email_account_id == account_id and row.provider_thread_id == provider_thread_id:
                return row.thread_id
        return None

    async def get_pending_reconciliation(self, account_id: int) -> Sequence[EmailMessage]:
        return [row for row in self.rows.values() if row.email_account_id == account_id and row.needs_reconciliation]

    async def get_pending_by_rfc_id(self, account_id: int, rfc_message_id: str) -> EmailMessage | None:
        return next(
            (
                row
                for row in await self.get_pending_reconciliation(account_id)
                if row.rfc_message_id == rfc_message_id
            ),
            None,
        )

    async def get_stored_by_rfc_id(
        self, account_id: int, rfc_message_id: str, folder: str | None
    ) -> EmailMessage | None:
        return next(
            (
                row
                for row in self.rows.values()
                if row.email_account_id == account_id
                and row.rfc_message_id == rfc_message_id
                and row.external_folder == folder
                and not row.needs_reconciliation
            ),
            None,
        )

    async def confirm_sent(self, message: EmailMessage, external_message_id: str | None) -> EmailMessage:
        return await self.update(
            message, {"needs_reconciliation": False, "external_message_id": external_message_id}, commit=True
        )

    async def count_for_account(self, account_id: int) -> int:
        return sum(1 for row in self.rows.values() if row.email_account_id == account_id)

    async def list_for_thread(self, thread_id: int) -> Sequence[EmailMessage]:
        return [row for row in self.rows.values() if row.thread_id == thread_id]

    async def add_attachments(self, message: EmailMessage, attachments: Sequence[EmailAttachment]) -> None:
        for attachment in attachments:
            attachment.message_id = message.id
            self.attachments.append(attachment)


class FakeThreadRepo(FakeRepo[EmailThread]):
    async def find_candidates(self, user_id: str, normalized_subject: str, since: datetime) -> Sequence[EmailThread]:
        candidates = [
            thread
            for thread in self.rows.values()
            if thread.user_id == user_id
            and thread.normalized_subject == normalized_subject
            and thread.last_message_at >= since
        ]
        return sorted(candidates, key=lambda thread: thread.last_message_at, reverse=True)

    async def list_for_user(self, user_id: str, filters: ThreadFilters) -> Sequence[EmailThread]:
        threads = [thread for thread in self.rows.values() if thread.user_id == user_id]
        if filters.archived is not None:
            threads = [thread for thread in threads if thread.is_archived is filters.archived]
        if filters.label:
            threads = [thread for thread in threads if filters.label in thread.labels]
        threads.sort(key=lambda thread: thread.last_message_at, reverse=True)
        return threads[filters.offset : filters.offset + filters.limit]


class FakeRateLimitRepo(FakeRepo[RateLimitWindow]):
    async def get_for_update(self, account_id: int, window: RateWindowKind) -> RateLimitWindow | None:
        # Yield so concurrent callers interleave here unless something serializes them.
        await asyncio.sleep(0)
        return next(
            (row for row in self.rows.values() if row.email_account_id == account_id and row.window is window), None
        )

    async def list_for_account(self, account_id: int) -> Sequence[RateLimitWindow]:
        return [row for row in self.rows.values() if row.email_account_id == account_id]

    async def delete_for_account(self, account_id: int) -> None:
        for row in await self.list_for_account(account_id):
            await self.delete(row)

    async def delete_started_before(self, window: RateWindowKind, cutoff: datetime) -> int:
        stale = [row for row in self.rows.values() if row.window is window and row.window_start < cutoff]
        for row in stale:
            await self.delete(row)
        return len(stale)


class FakeSyncHealthRepo(FakeRepo[SyncHealth]):
    def __init__(self) -> None:
        super().__init__()
        self.leases: dict[int, tuple[str, datetime]] = {}

    async def get_for_account(self, account_id: int) -> SyncHealth | None:
        return next((row for row in self.rows.values() if row.email_account_id == account_id), None)

    async def list_for_accounts(self, account_ids: Sequence[int]) -> Sequence[SyncHealth]:
        return [row for row in self.rows.values() if row.email_account_id in account_ids]

    async def claim_lease(self, account_id: int, owner: str, at: datetime, ttl_seconds: int) -> bool:
        # Yield like a database round trip, so concurrent claims interleave here.
        await asyncio.sleep(0)
        held = self.leases.get(account_id)
        if held is not None and held[1] >= at:
            return False
        self.leases[account_id] = (owner, at + timedelta(seconds=ttl_seconds))
        return True

    async def release_lease(self, account_id: int, owner: str) -> None:
        held = self.leases.get(account_id)
        if held is not None and held[0] == owner:
            del self.leases[account_id]

    async def record_success(self, account_id: int, at: datetime) -> SyncHealth:
        health = await self._get_or_create(account_id)
        health.consecutive_failures = 0
        health.last_error = None
        health.is_flagged = False
        health.last_success_at = at
        return health

    async def record_failure(
        self, account_id: int, error_message: str, at: datetime, flag_threshold: int
    ) -> SyncHealth:
        health = await self._get_or_create(account_id)
        health.consecutive_failures += 1
        health.last_error = error_message
        health.last_failure_at = at
        health.is_flagged = health.consecutive_failures >= flag_threshold
        return health

    async def _get_or_create(self, account_id: int) -> SyncHealth:
        health = await self.get_for_account(account_id)
        if health is None:
            health = SyncHealth(email_account_id=account_id, consecutive_failures=0, is_flagged=False)
            await self.add(health, commit=True)
        return health


class FakeOAuthClient:
    def __init__(self) -> None:
        self.refresh_calls = 0
        self.release = asyncio.Event()
        self.release.set()

    async def refresh(self, provider: ProviderKind, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        await self.release.wait()
        return TokenGrant(access_token=f"token-{self.refresh_calls}", expires_in=3600)

    async def exchange_code(self, provider: ProviderKind, code: str, redirect_uri: str | None = None) -> TokenGrant:
        return TokenGrant(access_token="token-code", expires_in=3600, refresh_token="refresh-code")

    async def close_session(self) -> None:
        return None


class FakeAdapter(ProtocolAdapter):
    """A mailbox whose messages are ordered by their integer position, like IMAP UIDs."""

    def __init__(self, provider: ProviderKind) -> None:
        self.provider = provider
        self.mailbox: list[RawMessage] = []
        self.skipped: list[SkippedMessage] = []
        self.fetch_errors: list[Exception] = []
        self.send_errors: list[Exception] = []
        self.send_delay = 0.0
        self.fetch_delay = 0.0
        self.max_concurrent_fetches = 0
        self._active_fetches = 0
        self.sent: list[OutboundDraft] = []
        self.sent_ids: dict[str, str] = {}
        self.verified_address: str | None = None
        self.fetch_calls = 0

    async def fetch(self, account: EmailAccount, cursor: Cursor, max_batch: int) -> FetchResult:
        self.fetch_calls += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        self._active_fetches += 1
        self.max_concurrent_fetches = max(self.max_concurrent_fetches, self._active_fetches)
        try:
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
        finally:
            self._active_fetches -= 1
        last = cursor.as_uid()
        batch = [raw for raw in self.mailbox if raw.position and raw.position.as_uid() > last][:max_batch]
        skipped = [item for item in self.skipped if item.position and item.position.as_uid() > last]
        positions = [raw.position.as_uid() for raw in batch if raw.position] + [
            item.position.as_uid() for item in skipped if item.position
        ]
        new_cursor = Cursor(str(max(positions))) if positions else cursor
        return FetchResult(messages=batch, cursor=new_cursor, skipped=skipped)

    async def send(self, account: EmailAccount, draft: OutboundDraft) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(draft)
        external_id = f"sent-{len(self.sent)}"
        self.sent_ids[draft.rfc_message_id or ""] = external_id
        return external_id

    async def verify(self, account: EmailAccount) -> str:
        return self.verified_address or account.email_address

    async def find_sent(self, account: EmailAccount, rfc_message_id: str) -> str | None:
        return self.sent_ids.get(rfc_message_id)


class FakeProviderHttp:
    """Canned JSON responses by path or URL. A list is consumed one response per call."""

    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str, dict[str, Any] | None]] = []

    async def request(
        self,
        method: str,
        path_or_url: str,
        token: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self.calls.append((method, path_or_url, params))
        response = self.routes[path_or_url]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close_session(self) -> None:
        return None


def http_error(status: int) -> PermanentProtocolError:
    error = PermanentProtocolError(f"GET returned {status}")
    error.details["status"] = status
    return error
