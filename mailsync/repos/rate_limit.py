from datetime import datetime
from typing import Sequence

from sqlalchemy import delete

from mailsync.models.rate_limit import RateLimitWindow, RateWindowKind
from mailsync.repos.base import BaseRepo


class RateLimitWindowRepo(BaseRepo[RateLimitWindow]):
    """Repository for RateLimitWindow model operations."""

    def __init__(self) -> None:
        super().__init__(RateLimitWindow)

    async def get_for_update(self, account_id: int, window: RateWindowKind) -> RateLimitWindow | None:
        """Load a window row, locking it until the transaction ends."""
        query = (
            self.base_stmt.where(RateLimitWindow.email_account_id == account_id, RateLimitWindow.window == window)
            .with_for_update()
        )
        result = await self.execute(query)
        return result.one_or_none()

    async def list_for_account(self, account_id: int) -> Sequence[RateLimitWindow]:
        result = await self.execute(self.base_stmt.where(RateLimitWindow.email_account_id == account_id))
        return result.all()

    async def delete_for_account(self, account_id: int) -> None:
        await self._db.session.execute(delete(RateLimitWindow).where(RateLimitWindow.email_account_id == account_id))
        await self.flush()

    async def delete_started_before(self, window: RateWindowKind, cutoff: datetime) -> int:
        stmt = delete(RateLimitWindow).where(RateLimitWindow.window == window, RateLimitWindow.window_start < cutoff)
        result = await self._db.session.execute(stmt)
        await self.flush()
        return int(result.rowcount or 0)  # type: ignore[attr-defined]
