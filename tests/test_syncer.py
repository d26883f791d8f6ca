from contextlib import nullcontext
from datetime import timedelta

import pytest
from fakes import (
    FakeAccountRepo,
    FakeAdapter,
    FakeClock,
    FakeMessageRepo,
    FakeOAuthClient,
    FakeSyncHealthRepo,
    FakeThreadRepo,
    make_account,
    make_raw,
)
from sqlalchemy.exc import OperationalError

from mailsync.controllers.adapters.base import Cursor, RawMessage, SkippedMessage
from mailsync.controllers.adapters.registry import AdapterRegistry
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.controllers.sync.deduplicator import Deduplicator, PersistOutcome
from mailsync.controllers.sync.syncer import AccountSyncer
from mailsync.controllers.sync.thread_assembler import ThreadAssembler
from mailsync.exceptions import AccountInactiveError, AuthExpiredError, TransientNetworkError
from mailsync.models.account import EmailAccount, ProviderKind
from mailsync.models.message import EmailMessage, MessageType


@pytest.fixture
def mailbox(adapter: FakeAdapter, clock: FakeClock) -> FakeAdapter:
    adapter.mailbox = [make_raw(uid, sent_at=clock() - timedelta(minutes=200 - uid)) for uid in range(99, 104)]
    return adapter


async def test_new_uids_are_fetched_in_order_and_cursor_advances(
    syncer: AccountSyncer, mailbox: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount, clock: FakeClock
) -> None:
    account.sync_cursor = "100"

    report = await syncer.sync(account)

    assert report.fetched == 3
    assert report.stored == 3
    assert account.sync_cursor == "103"
    assert account.last_sync_at == clock()
    stored_ids = [row.external_message_id for row in message_repo.rows.values()]
    assert stored_ids == ["INBOX:101", "INBOX:102", "INBOX:103"]

    again = await syncer.sync(account)

    assert again.fetched == 0
    assert account.sync_cursor == "103"


async def test_refetching_the_same_batch_is_idempotent(
    syncer: AccountSyncer, mailbox: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount
) -> None:
    account.sync_cursor = "100"
    await syncer.sync(account)

    # As if the process died after storing the messages but before the final cursor write.
    account.sync_cursor = "100"
    report = await syncer.sync(account)

    assert report.stored == 0
    assert report.duplicates == 3
    assert await message_repo.count_for_account(account.id) == 3


async def test_cursor_not_advanced_past_failure_mid_batch(
    syncer: AccountSyncer, mailbox: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount
) -> None:
    account.sync_cursor = "100"
    message_repo.fail_on = {"INBOX:102"}

    with pytest.raises(OperationalError):
        await syncer.sync(account)

    assert account.sync_cursor == "101"
    assert await message_repo.count_for_account(account.id) == 1

    message_repo.fail_on = set()
    report = await syncer.sync(account)

    assert report.stored == 2
    assert account.sync_cursor == "103"


async def test_transient_fetch_failure_keeps_cursor(
    syncer: AccountSyncer, mailbox: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount
) -> None:
    account.sync_cursor = "100"
    mailbox.fetch_errors = [TransientNetworkError("connection reset")]

    with pytest.raises(TransientNetworkError):
        await syncer.sync(account)

    assert account.sync_cursor == "100"
    assert not message_repo.rows


async def test_unparseable_message_is_skipped_and_batch_continues(
    syncer: AccountSyncer, adapter: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount
) -> None:
    adapter.mailbox = [make_raw(101), make_raw(103)]
    adapter.skipped = [SkippedMessage("INBOX:102", "Unparseable message", Cursor("102"))]

    report = await syncer.sync(account)

    assert report.stored == 2
    assert report.skipped == 1
    assert account.sync_cursor == "103"


@pytest.fixture
def gmail_setup(
    account_repo: FakeAccountRepo,
    message_repo: FakeMessageRepo,
    sync_health_repo: FakeSyncHealthRepo,
    credential_store: CredentialStore,
    deduplicator: Deduplicator,
    thread_assembler: ThreadAssembler,
    clock: FakeClock,
) -> tuple[AccountSyncer, FakeAdapter]:
    adapter = FakeAdapter(ProviderKind.gmail)
    syncer = AccountSyncer(
        account_repo,  # type: ignore[arg-type]
        message_repo,  # type: ignore[arg-type]
        sync_health_repo=sync_health_repo,  # type: ignore[arg-type]
        adapters=AdapterRegistry([adapter]),
        credential_store=credential_store,
        deduplicator=deduplicator,
        thread_assembler=thread_assembler,
        clock=clock,
        session_scope=nullcontext,
    )
    return syncer, adapter


async def test_rejected_token_is_refreshed_once_and_fetch_retried(
    gmail_setup: tuple[AccountSyncer, FakeAdapter],
    account_repo: FakeAccountRepo,
    oauth_client: FakeOAuthClient,
    clock: FakeClock,
) -> None:
    syncer, adapter = gmail_setup
    account = make_account(provider=ProviderKind.gmail, token_expires_at=clock() + timedelta(hours=1))
    await account_repo.add(account)
    adapter.mailbox = [make_raw(1)]
    adapter.fetch_errors = [AuthExpiredError("401 from provider")]

    report = await syncer.sync(account)

    assert report.stored == 1
    assert adapter.fetch_calls == 2
    assert oauth_client.refresh_calls == 1


async def test_second_auth_rejection_surfaces(
    gmail_setup: tuple[AccountSyncer, FakeAdapter],
    account_repo: FakeAccountRepo,
    oauth_client: FakeOAuthClient,
    clock: FakeClock,
) -> None:
    syncer, adapter = gmail_setup
    account = make_account(provider=ProviderKind.gmail, token_expires_at=clock() + timedelta(hours=1))
    await account_repo.add(account)
    adapter.fetch_errors = [AuthExpiredError("401 from provider"), AuthExpiredError("401 again")]

    with pytest.raises(AuthExpiredError):
        await syncer.sync(account)

    assert oauth_client.refresh_calls == 1
    assert adapter.fetch_calls == 2


def _pending(account: EmailAccount, rfc_message_id: str) -> EmailMessage:
    return EmailMessage(
        thread_id=1,
        email_account_id=account.id,
        user_id=account.user_id,
        external_message_id=None,
        rfc_message_id=rfc_message_id,
        from_email=account.email_address,
        to_emails=["alice@partner.com"],
        cc_emails=[],
        bcc_emails=[],
        subject="Hello",
        message_type=MessageType.sent,
        needs_reconciliation=True,
    )


async def test_interrupted_send_is_confirmed_on_next_sync(
    syncer: AccountSyncer, adapter: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount
) -> None:
    pending = _pending(account, "<abc@example.com>")
    await message_repo.add(pending)
    adapter.sent_ids["<abc@example.com>"] = "Sent:12"

    report = await syncer.sync(account)

    assert report.reconciled == 1
    assert pending.needs_reconciliation is False
    assert pending.external_message_id == "Sent:12"


async def test_unconfirmed_send_is_kept_until_it_is_old(
    syncer: AccountSyncer, message_repo: FakeMessageRepo, account: EmailAccount, clock: FakeClock
) -> None:
    recent = _pending(account, "<recent@example.com>")
    recent.created_at = clock() - timedelta(hours=1)
    stale = _pending(account, "<stale@example.com>")
    stale.created_at = clock() - timedelta(hours=25)
    await message_repo.add(recent)
    await message_repo.add(stale)

    report = await syncer.sync(account)

    assert report.dropped == 1
    assert recent.id in message_repo.rows
    assert stale.id not in message_repo.rows


async def test_dropped_sends_leave_their_threads_consistent(
    syncer: AccountSyncer,
    message_repo: FakeMessageRepo,
    thread_repo: FakeThreadRepo,
    thread_assembler: ThreadAssembler,
    account: EmailAccount,
    clock: FakeClock,
) -> None:
    shared = await thread_assembler.assign_thread(account.user_id, "Hello", ["alice@partner.com"])
    await thread_assembler.assign_thread(account.user_id, "Re: Hello", ["alice@partner.com"])
    lonely = await thread_assembler.assign_thread(account.user_id, "Quote", ["carol@vendor.com"])
    for rfc_message_id, thread in (("<a@example.com>", shared), ("<b@example.com>", lonely)):
        pending = _pending(account, rfc_message_id)
        pending.thread_id = thread.id
        pending.created_at = clock() - timedelta(hours=25)
        await message_repo.add(pending)

    report = await syncer.sync(account)

    assert report.dropped == 2
    assert shared.message_count == 1
    assert lonely.id not in thread_repo.rows


async def test_sync_stops_when_account_is_disabled_mid_batch(
    syncer: AccountSyncer,
    mailbox: FakeAdapter,
    deduplicator: Deduplicator,
    message_repo: FakeMessageRepo,
    account: EmailAccount,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    account.sync_cursor = "100"
    persist = deduplicator.persist

    async def persist_then_disable(
        target: EmailAccount, raw: RawMessage, advance_to: Cursor | None = None
    ) -> PersistOutcome:
        outcome = await persist(target, raw, advance_to)
        # Another process disables the account while the batch is running.
        account.is_active = False
        return outcome

    monkeypatch.setattr(deduplicator, "persist", persist_then_disable)

    with pytest.raises(AccountInactiveError):
        await syncer.sync(account)

    assert await message_repo.count_for_account(account.id) == 1
    assert account.sync_cursor == "101"


async def test_run_skips_account_leased_by_another_worker(
    syncer: AccountSyncer,
    mailbox: FakeAdapter,
    sync_health_repo: FakeSyncHealthRepo,
    account: EmailAccount,
    clock: FakeClock,
) -> None:
    sync_health_repo.leases[account.id] = ("other-worker", clock() + timedelta(minutes=5))

    assert await syncer.run(account.id) is None
    assert mailbox.fetch_calls == 0

    clock.advance(minutes=6)
    report = await syncer.run(account.id)

    assert report is not None and report.stored == 5
    assert account.id not in sync_health_repo.leases


async def test_run_records_failures_and_clears_them_on_success(
    syncer: AccountSyncer,
    mailbox: FakeAdapter,
    sync_health_repo: FakeSyncHealthRepo,
    account: EmailAccount,
) -> None:
    mailbox.fetch_errors = [TransientNetworkError(f"connection reset {n}") for n in range(5)]

    for _ in range(4):
        with pytest.raises(TransientNetworkError):
            await syncer.run(account.id)
    health = await sync_health_repo.get_for_account(account.id)
    assert health is not None
    assert health.consecutive_failures == 4
    assert health.last_error == "connection reset 3"
    assert not health.is_flagged
    assert account.id not in sync_health_repo.leases

    with pytest.raises(TransientNetworkError):
        await syncer.run(account.id)
    assert health.is_flagged

    await syncer.run(account.id)

    assert health.consecutive_failures == 0
    assert health.last_error is None
    assert not health.is_flagged


async def test_run_refuses_inactive_account(syncer: AccountSyncer, mailbox: FakeAdapter, account: EmailAccount) -> None:
    account.is_active = False

    with pytest.raises(AccountInactiveError):
        await syncer.run(account.id)
    assert mailbox.fetch_calls == 0
