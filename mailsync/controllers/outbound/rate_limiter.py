import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Sequence

from sqlalchemy.exc import IntegrityError

from mailsync.models.account import EmailAccount, ProviderKind
from mailsync.models.base import utcnow
from mailsync.models.rate_limit import RateLimitWindow, RateWindowKind
from mailsync.repos.rate_limit import RateLimitWindowRepo
from mailsync.utils.locks import KeyedLock
from settings import settings

ALL_WINDOWS = (RateWindowKind.hourly, RateWindowKind.daily)


@dataclass(frozen=True)
class WindowUsage:
    window: RateWindowKind
    count: int
    limit: int
    resets_at: datetime | None = None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "resets_at": self.resets_at.isoformat() if self.resets_at else None,
        }


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    usage: dict[RateWindowKind, WindowUsage]

    @property
    def exceeded(self) -> list[RateWindowKind]:
        return [kind for kind, usage in self.usage.items() if usage.count >= usage.limit]

    def to_dict(self) -> dict[str, Any]:
        return {kind.value: usage.to_dict() for kind, usage in self.usage.items()}


def default_limits(provider: ProviderKind) -> dict[RateWindowKind, int]:
    hourly, daily = settings.outbound.limits_for(provider.value)
    return {RateWindowKind.hourly: hourly, RateWindowKind.daily: daily}


class RateLimiter:
    """Hourly and daily outbound send counters per account.

    Check and increment happen under one per-account lock, and the window rows
    are read FOR UPDATE so other processes serialize on them as well. A window
    older than its duration restarts at zero before it is evaluated.
    """

    def __init__(
        self,
        rate_limit_repo: RateLimitWindowRepo,
        limits: Callable[[ProviderKind], dict[RateWindowKind, int]] = default_limits,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._repo = rate_limit_repo
        self._limits = limits
        self._clock = clock
        self._locks = KeyedLock()

    async def check_and_increment(
        self, account: EmailAccount, windows: Sequence[RateWindowKind] = ALL_WINDOWS
    ) -> RateLimitDecision:
        """Count one send if every window has room. Denied attempts leave the counts unchanged."""
        async with self._locks(account.id):
            try:
                return await self._check_and_increment(account, windows)
            except IntegrityError:
                # A concurrent process created the window row first.
                await self._repo.rollback()
                return await self._check_and_increment(account, windows)

    async def _check_and_increment(self, account: EmailAccount, windows: Sequence[RateWindowKind]) -> RateLimitDecision:
        now = self._clock()
        limits = self._limits(account.provider)
        rows = {kind: await self._current_window(account.id, kind, now) for kind in windows}

        allowed = all(rows[kind].count < limits[kind] for kind in windows)
        if allowed:
            for row in rows.values():
                row.count += 1
        await self._repo.commit()

        decision = RateLimitDecision(
            allowed=allowed,
            usage={kind: WindowUsage(kind, row.count, limits[kind], row.resets_at) for kind, row in rows.items()},
        )
        if not allowed:
            self._logger.info(f"Send rate limit reached for account {account.id}: {decision.to_dict()}")
        return decision

    async def _current_window(self, account_id: int, kind: RateWindowKind, now: datetime) -> RateLimitWindow:
        row = await self._repo.get_for_update(account_id, kind)
        if row is None:
            row = RateLimitWindow(email_account_id=account_id, window=kind, count=0, window_start=now)
            await self._repo.add(row)
        elif row.is_expired(now):
            row.count = 0
            row.window_start = now
        return row

    async def get_usage(self, account: EmailAccount) -> dict[RateWindowKind, WindowUsage]:
        """Current counts without changing them. Expired windows report zero."""
        now = self._clock()
        limits = self._limits(account.provider)
        rows = {row.window: row for row in await self._repo.list_for_account(account.id)}

        usage = {}
        for kind in ALL_WINDOWS:
            row = rows.get(kind)
            if row is None or row.is_expired(now):
                usage[kind] = WindowUsage(kind, 0, limits[kind])
            else:
                usage[kind] = WindowUsage(kind, row.count, limits[kind], row.resets_at)
        return usage

    async def reset(self, account_id: int) -> None:
        async with self._locks(account_id):
            await self._repo.delete_for_account(account_id)
            await self._repo.commit()
        self._logger.info(f"Reset send rate limits for account {account_id}")

    async def cleanup_expired(self) -> int:
        """Delete window rows that have expired. Returns the number removed."""
        now = self._clock()
        removed = 0
        for kind in ALL_WINDOWS:
            removed += await self._repo.delete_started_before(kind, now - kind.duration)
        await self._repo.commit()
        return removed
