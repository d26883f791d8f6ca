import os

os.environ.setdefault("MAILSYNC_ENV", "test")

from contextlib import nullcontext  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from fakes import (  # noqa: E402
    FakeAccountRepo,
    FakeAdapter,
    FakeClock,
    FakeMessageRepo,
    FakeOAuthClient,
    FakeRateLimitRepo,
    FakeSyncHealthRepo,
    FakeThreadRepo,
    make_account,
)

from mailsync.controllers.adapters.registry import AdapterRegistry  # noqa: E402
from mailsync.controllers.credentials.credential_store import CredentialStore  # noqa: E402
from mailsync.controllers.outbound.dispatcher import Dispatcher  # noqa: E402
from mailsync.controllers.outbound.rate_limiter import RateLimiter  # noqa: E402
from mailsync.controllers.outbound.spam_scorer import SpamScorer  # noqa: E402
from mailsync.controllers.sync.deduplicator import Deduplicator  # noqa: E402
from mailsync.controllers.sync.syncer import AccountSyncer  # noqa: E402
from mailsync.controllers.sync.thread_assembler import ThreadAssembler  # noqa: E402
from mailsync.models.account import EmailAccount, ProviderKind  # noqa: E402
from mailsync.models.rate_limit import RateWindowKind  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def account_repo() -> FakeAccountRepo:
    return FakeAccountRepo()


@pytest.fixture
def message_repo() -> FakeMessageRepo:
    return FakeMessageRepo()


@pytest.fixture
def thread_repo() -> FakeThreadRepo:
    return FakeThreadRepo()


@pytest.fixture
def rate_limit_repo() -> FakeRateLimitRepo:
    return FakeRateLimitRepo()


@pytest.fixture
def sync_health_repo() -> FakeSyncHealthRepo:
    return FakeSyncHealthRepo()


@pytest.fixture
def oauth_client() -> FakeOAuthClient:
    return FakeOAuthClient()


@pytest.fixture
async def account(account_repo: FakeAccountRepo, clock: FakeClock) -> EmailAccount:
    account = make_account(provider=ProviderKind.smtp, token_expires_at=clock() + timedelta(hours=1))
    await account_repo.add(account)
    return account


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter(ProviderKind.smtp)


@pytest.fixture
def credential_store(account_repo: FakeAccountRepo, oauth_client: FakeOAuthClient, clock: FakeClock) -> CredentialStore:
    return CredentialStore(
        account_repo,  # type: ignore[arg-type]
        oauth_client,  # type: ignore[arg-type]
        refresh_margin_seconds=120,
        clock=clock,
        session_scope=nullcontext,
    )


@pytest.fixture
def thread_assembler(thread_repo: FakeThreadRepo, message_repo: FakeMessageRepo, clock: FakeClock) -> ThreadAssembler:
    return ThreadAssembler(
        thread_repo, message_repo, recency_days=30, use_provider_thread_ids=True, clock=clock  # type: ignore[arg-type]
    )


@pytest.fixture
def deduplicator(
    message_repo: FakeMessageRepo, account_repo: FakeAccountRepo, thread_assembler: ThreadAssembler
) -> Deduplicator:
    return Deduplicator(message_repo, account_repo, thread_assembler)  # type: ignore[arg-type]


@pytest.fixture
def syncer(
    account_repo: FakeAccountRepo,
    message_repo: FakeMessageRepo,
    sync_health_repo: FakeSyncHealthRepo,
    adapter: FakeAdapter,
    credential_store: CredentialStore,
    deduplicator: Deduplicator,
    thread_assembler: ThreadAssembler,
    clock: FakeClock,
) -> AccountSyncer:
    return AccountSyncer(
        account_repo,  # type: ignore[arg-type]
        message_repo,  # type: ignore[arg-type]
        sync_health_repo=sync_health_repo,  # type: ignore[arg-type]
        adapters=AdapterRegistry([adapter]),
        credential_store=credential_store,
        deduplicator=deduplicator,
        thread_assembler=thread_assembler,
        max_batch=50,
        lease_seconds=600,
        clock=clock,
        session_scope=nullcontext,
    )


@pytest.fixture
def rate_limiter(rate_limit_repo: FakeRateLimitRepo, clock: FakeClock) -> RateLimiter:
    limits = {ProviderKind.smtp: 3, ProviderKind.gmail: 3, ProviderKind.outlook: 3}

    def small_limits(provider: ProviderKind) -> dict[RateWindowKind, int]:
        return {RateWindowKind.hourly: limits[provider], RateWindowKind.daily: 5}

    return RateLimiter(rate_limit_repo, limits=small_limits, clock=clock)  # type: ignore[arg-type]


@pytest.fixture
def dispatcher(
    message_repo: FakeMessageRepo,
    adapter: FakeAdapter,
    credential_store: CredentialStore,
    rate_limiter: RateLimiter,
    thread_assembler: ThreadAssembler,
    clock: FakeClock,
) -> Dispatcher:
    return Dispatcher(
        message_repo,  # type: ignore[arg-type]
        AdapterRegistry([adapter]),
        credential_store,
        rate_limiter,
        SpamScorer(),
        thread_assembler,
        send_timeout=1,
        clock=clock,
    )
