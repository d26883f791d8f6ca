import asyncio
from datetime import timedelta
from typing import Any
from uuid import uuid4

import pytest
from fakes import FakeAccountRepo, FakeAdapter, FakeClock, FakeOAuthClient, FakeSyncHealthRepo, make_raw

from mailsync.controllers.account.account_controller import AccountController, AccountLink
from mailsync.controllers.adapters.registry import AdapterRegistry
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.controllers.sync.syncer import AccountSyncer, SyncReport
from mailsync.exceptions import (
    AuthExpiredError,
    EntityAlreadyExistError,
    EntityNotFoundError,
    InvalidDataError,
    TransientNetworkError,
)
from mailsync.models.account import EmailAccount, ProviderKind
from mailsync.utils.password import PasswordUtils


class RecordingScheduler:
    def __init__(self) -> None:
        self.registered: set[int] = set()
        self.removed: list[int] = []
        self.trigger_result = True

    def add_account(self, account_id: int, frequency_seconds: int | None = None) -> None:
        self.registered.add(account_id)

    async def remove_account(self, account_id: int) -> None:
        self.registered.discard(account_id)
        self.removed.append(account_id)

    def is_registered(self, account_id: int) -> bool:
        return account_id in self.registered

    async def trigger(self, account_id: int) -> bool:
        return self.trigger_result

    def status(self) -> dict[int, Any]:
        return {}


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def gmail_adapter() -> FakeAdapter:
    return FakeAdapter(ProviderKind.gmail)


@pytest.fixture
def controller(
    account_repo: FakeAccountRepo,
    sync_health_repo: FakeSyncHealthRepo,
    adapter: FakeAdapter,
    gmail_adapter: FakeAdapter,
    credential_store: CredentialStore,
    oauth_client: FakeOAuthClient,
    scheduler: RecordingScheduler,
    syncer: AccountSyncer,
) -> AccountController:
    return AccountController(
        account_repo,  # type: ignore[arg-type]
        sync_health_repo,  # type: ignore[arg-type]
        AdapterRegistry([adapter, gmail_adapter]),
        credential_store,
        oauth_client,  # type: ignore[arg-type]
        scheduler,  # type: ignore[arg-type]
        syncer,
    )


def imap_link(**overrides: Any) -> AccountLink:
    values: dict[str, Any] = {
        "email_address": "Me@Example.com",
        "imap_host": "imap.example.com",
        "smtp_host": "smtp.example.com",
        "password": "app-password",
    }
    values.update(overrides)
    return AccountLink(**values)


async def test_link_imap_account(controller: AccountController, account_repo: FakeAccountRepo) -> None:
    account = await controller.link_account("user-9", ProviderKind.smtp, imap_link(sync_frequency_seconds=1))

    assert account.email_address == "me@example.com"
    assert account.is_default
    assert account.is_active
    assert account.imap_port == 993
    assert account.smtp_port == 465
    assert account.username == "Me@Example.com"
    assert account.sync_frequency_seconds == 10
    assert PasswordUtils.decrypt_secret(account.password or "") == "app-password"
    assert account_repo.commits == 1


async def test_relinking_updates_existing_account(controller: AccountController, account_repo: FakeAccountRepo) -> None:
    first = await controller.link_account("user-9", ProviderKind.smtp, imap_link())
    second = await controller.link_account("user-9", ProviderKind.smtp, imap_link(password=None, imap_port=143))

    assert second is first
    assert second.imap_port == 143
    assert PasswordUtils.decrypt_secret(second.password or "") == "app-password"
    assert len(account_repo.rows) == 1


async def test_only_requested_account_becomes_default(controller: AccountController) -> None:
    first = await controller.link_account("user-9", ProviderKind.smtp, imap_link())
    second = await controller.link_account("user-9", ProviderKind.smtp, imap_link(email_address="two@example.com"))
    assert first.is_default and not second.is_default

    third = await controller.link_account(
        "user-9", ProviderKind.smtp, imap_link(email_address="three@example.com", is_default=True)
    )

    assert third.is_default
    assert not first.is_default


async def test_link_oauth_account_with_authorization_code(controller: AccountController) -> None:
    account = await controller.link_account(
        "user-9",
        ProviderKind.gmail,
        AccountLink(email_address="me@gmail.com", authorization_code="code", redirect_uri="https://app/callback"),
    )

    assert PasswordUtils.decrypt_secret(account.refresh_token or "") == "refresh-code"
    assert PasswordUtils.decrypt_secret(account.access_token or "") == "token-code"
    assert account.token_expires_at is not None


async def test_oauth_link_requires_code_or_refresh_token(controller: AccountController) -> None:
    with pytest.raises(InvalidDataError):
        await controller.link_account("user-9", ProviderKind.gmail, AccountLink(email_address="me@gmail.com"))


async def test_link_rejects_mismatched_mailbox(controller: AccountController, adapter: FakeAdapter) -> None:
    adapter.verified_address = "someone@else.com"

    with pytest.raises(InvalidDataError, match="someone@else.com"):
        await controller.link_account("user-9", ProviderKind.smtp, imap_link())


async def test_failed_verification_leaves_no_account(
    controller: AccountController, adapter: FakeAdapter, account_repo: FakeAccountRepo
) -> None:
    async def reject(account: EmailAccount) -> str:
        raise AuthExpiredError("Invalid credentials")

    adapter.verify = reject  # type: ignore[method-assign]

    with pytest.raises(AuthExpiredError):
        await controller.link_account("user-9", ProviderKind.smtp, imap_link())

    assert not account_repo.rows
    assert account_repo.rollbacks == 1


async def test_disable_stops_sync_and_keeps_account(
    controller: AccountController, scheduler: RecordingScheduler, account: EmailAccount
) -> None:
    scheduler.registered.add(account.id)

    disabled = await controller.disable_account("user-1", account.uuid)

    assert disabled.is_active is False
    assert scheduler.removed == [account.id]
    assert not disabled.should_sync


async def test_remove_deletes_account(
    controller: AccountController, account_repo: FakeAccountRepo, scheduler: RecordingScheduler, account: EmailAccount
) -> None:
    await controller.remove_account("user-1", account.uuid)

    assert account.id not in account_repo.rows
    assert scheduler.removed == [account.id]


async def test_accounts_are_scoped_to_their_user(controller: AccountController, account: EmailAccount) -> None:
    with pytest.raises(EntityNotFoundError):
        await controller.get_account("user-2", account.uuid)
    with pytest.raises(EntityNotFoundError):
        await controller.get_account("user-1", uuid4())


async def test_sync_now_runs_directly_when_not_scheduled(
    controller: AccountController, adapter: FakeAdapter, account: EmailAccount
) -> None:
    adapter.mailbox = [make_raw(1), make_raw(2)]

    report = await controller.sync_now("user-1", account.uuid)

    assert isinstance(report, SyncReport)
    assert report.stored == 2
    assert account.sync_cursor == "2"


async def test_sync_now_reports_running_sync(
    controller: AccountController, scheduler: RecordingScheduler, account: EmailAccount
) -> None:
    scheduler.registered.add(account.id)
    scheduler.trigger_result = False

    assert await controller.sync_now("user-1", account.uuid) is None


async def test_sync_now_refuses_disabled_account(controller: AccountController, account: EmailAccount) -> None:
    account.sync_enabled = False

    with pytest.raises(InvalidDataError):
        await controller.sync_now("user-1", account.uuid)


async def test_concurrent_sync_now_runs_one_sync(
    controller: AccountController,
    adapter: FakeAdapter,
    sync_health_repo: FakeSyncHealthRepo,
    account: EmailAccount,
) -> None:
    adapter.mailbox = [make_raw(1), make_raw(2)]
    adapter.fetch_delay = 0.01

    reports = await asyncio.gather(
        controller.sync_now("user-1", account.uuid), controller.sync_now("user-1", account.uuid)
    )

    assert adapter.fetch_calls == 1
    assert adapter.max_concurrent_fetches == 1
    assert sorted(report is None for report in reports) == [False, True]
    assert not sync_health_repo.leases


async def test_sync_now_yields_to_standalone_worker(
    controller: AccountController,
    adapter: FakeAdapter,
    sync_health_repo: FakeSyncHealthRepo,
    account: EmailAccount,
    clock: FakeClock,
) -> None:
    sync_health_repo.leases[account.id] = ("sync-watcher", clock() + timedelta(minutes=5))

    assert await controller.sync_now("user-1", account.uuid) is None
    assert adapter.fetch_calls == 0


async def test_refresh_during_rejected_link_keeps_nothing(
    controller: AccountController,
    gmail_adapter: FakeAdapter,
    credential_store: CredentialStore,
    account_repo: FakeAccountRepo,
    oauth_client: FakeOAuthClient,
) -> None:
    async def refresh_then_report_other_mailbox(account: EmailAccount) -> str:
        await credential_store.get_valid_token(account)
        return "someone@else.com"

    gmail_adapter.verify = refresh_then_report_other_mailbox  # type: ignore[method-assign]

    with pytest.raises(InvalidDataError, match="someone@else.com"):
        await controller.link_account(
            "user-9", ProviderKind.gmail, AccountLink(email_address="me@gmail.com", refresh_token="rt")
        )

    assert oauth_client.refresh_calls == 1
    assert account_repo.token_writes == 1
    assert account_repo.commits == 0
    assert not account_repo.rows


async def test_rejected_relink_keeps_existing_account(
    controller: AccountController, adapter: FakeAdapter, account_repo: FakeAccountRepo
) -> None:
    first = await controller.link_account("user-9", ProviderKind.smtp, imap_link())
    adapter.verified_address = "someone@else.com"

    with pytest.raises(InvalidDataError):
        await controller.link_account("user-9", ProviderKind.smtp, imap_link(imap_port=143))

    assert list(account_repo.rows.values()) == [first]
    assert account_repo.rollbacks == 1


async def test_address_linked_with_other_provider_conflicts(
    controller: AccountController, account_repo: FakeAccountRepo
) -> None:
    await controller.link_account("user-9", ProviderKind.smtp, imap_link(email_address="me@gmail.com"))

    with pytest.raises(EntityAlreadyExistError):
        await controller.link_account(
            "user-9", ProviderKind.gmail, AccountLink(email_address="me@gmail.com", refresh_token="rt")
        )
    assert len(account_repo.rows) == 1


async def test_list_accounts_includes_sync_health(
    controller: AccountController,
    syncer: AccountSyncer,
    adapter: FakeAdapter,
    account: EmailAccount,
) -> None:
    adapter.fetch_errors = [TransientNetworkError("connection reset")]
    with pytest.raises(TransientNetworkError):
        await syncer.run(account.id)

    (overview,) = await controller.list_accounts("user-1")

    assert overview.account is account
    assert overview.health is not None
    assert overview.health.consecutive_failures == 1
    assert overview.health.last_error == "connection reset"


async def test_list_accounts_without_sync_history(
    controller: AccountController, account: EmailAccount
) -> None:
    (overview,) = await controller.list_accounts("user-1")

    assert overview.account is account
    assert overview.health is None
