import asyncio
import logging

from mailsync.controllers.sync.scheduler import SyncScheduler
from mailsync.db import session_scope
from mailsync.repos.account import AccountRepo
from settings import settings


class SyncWatcher:
    """Keeps the scheduler's workers in line with the accounts table.

    Accounts linked, disabled or removed by another process are picked up on
    the next refresh.
    """

    def __init__(self, account_repo: AccountRepo, scheduler: SyncScheduler, refresh_interval: int | None = None):
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._scheduler = scheduler
        self._refresh_interval = refresh_interval or settings.sync.account_refresh_interval

    async def refresh(self) -> int:
        """Load syncable accounts and reconcile the running workers. Returns the number of accounts."""
        async with session_scope():
            accounts = await self._account_repo.get_all_syncable()
        await self._scheduler.reconcile(accounts)
        return len(accounts)

    async def run(self, stop: asyncio.Event) -> None:
        self._logger.info(f"Sync watcher started; refreshing accounts every {self._refresh_interval}s")
        try:
            while not stop.is_set():
                try:
                    count = await self.refresh()
                    self._logger.debug(f"Watching {count} accounts")
                except Exception:
                    self._logger.exception("Failed to refresh accounts; keeping current workers")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._refresh_interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            await self._scheduler.stop()
            self._logger.info("Sync watcher stopped")
