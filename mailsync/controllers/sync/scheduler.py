"""
Per-account sync workers.

Each active, sync-enabled account gets one asyncio task that calls `tick` every
`sync_frequency_seconds`. States:

    idle -> syncing -> idle                 successful run
    idle -> syncing -> backoff -> idle      failed run, delay min(base * 2 ** (n - 1), cap)
    any  -> disabled                        account removed, disabled or found inactive

A tick for an account that is already syncing returns immediately, so two
runs for one account never overlap. Removing an account cancels its worker
and any in-flight run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from mailsync.exceptions import AccountInactiveError
from mailsync.models.account import EmailAccount
from mailsync.models.base import utcnow
from settings import settings


class SyncState(Enum):
    idle = "idle"
    syncing = "syncing"
    backoff = "backoff"
    disabled = "disabled"


@dataclass
class AccountSyncStatus:
    account_id: int
    frequency_seconds: int
    state: SyncState = SyncState.idle
    consecutive_failures: int = 0
    last_error: str | None = None
    last_run_at: datetime | None = None
    last_result: Any = field(default=None, repr=False)


class SyncScheduler:
    def __init__(
        self,
        runner: Callable[[int], Awaitable[Any]],
        backoff_base_seconds: float | None = None,
        backoff_cap_seconds: float | None = None,
        min_frequency_seconds: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._runner = runner
        self._backoff_base = backoff_base_seconds or settings.sync.backoff_base_seconds
        self._backoff_cap = backoff_cap_seconds or settings.sync.backoff_cap_seconds
        self._min_frequency = min_frequency_seconds or settings.sync.min_frequency_seconds
        self._sleep = sleep

        self._statuses: dict[int, AccountSyncStatus] = {}
        self._workers: dict[int, asyncio.Task[None]] = {}
        self._inflight: dict[int, asyncio.Task[Any]] = {}

    def backoff_delay(self, failures: int) -> float:
        return float(min(self._backoff_base * 2 ** max(failures - 1, 0), self._backoff_cap))

    def add_account(self, account_id: int, frequency_seconds: int | None = None, start_worker: bool = True) -> None:
        """Register an account, or update its frequency if it is already registered."""
        frequency = max(self._min_frequency, frequency_seconds or settings.sync.default_frequency_seconds)
        status = self._statuses.get(account_id)
        if status is None or status.state is SyncState.disabled:
            self._statuses[account_id] = AccountSyncStatus(account_id=account_id, frequency_seconds=frequency)
        else:
            status.frequency_seconds = frequency

        worker = self._workers.get(account_id)
        if start_worker and (worker is None or worker.done()):
            self._workers[account_id] = asyncio.create_task(self._worker(account_id), name=f"sync-worker-{account_id}")
            self._logger.info(f"Started sync worker for account {account_id} every {frequency}s")

    async def remove_account(self, account_id: int) -> None:
        """Stop syncing an account now, cancelling a run that is in progress."""
        status = self._statuses.get(account_id)
        if status is not None:
            status.state = SyncState.disabled

        tasks = [task for task in (self._workers.pop(account_id, None), self._inflight.get(account_id)) if task]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self._logger.info(f"Stopped sync worker for account {account_id}")

    async def reconcile(self, accounts: Sequence[EmailAccount]) -> None:
        """Match the running workers to the given account list."""
        wanted = {account.id: account for account in accounts if account.should_sync}
        for account_id in list(self._workers):
            if account_id not in wanted:
                await self.remove_account(account_id)
        for account in wanted.values():
            self.add_account(account.id, account.sync_frequency_seconds)

    async def trigger(self, account_id: int) -> bool:
        """Run a sync now. Returns False when the account is already syncing or not registered."""
        return await self.tick(account_id)

    async def tick(self, account_id: int) -> bool:
        """Run one sync unless one is already running for the account."""
        status = self._statuses.get(account_id)
        if status is None or status.state in (SyncState.syncing, SyncState.disabled):
            return False

        status.state = SyncState.syncing
        status.last_run_at = utcnow()
        task = asyncio.create_task(self._runner(account_id), name=f"sync-{account_id}")
        self._inflight[account_id] = task
        try:
            result = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # Only the run was cancelled, by remove_account.
            self._logger.info(f"Sync for account {account_id} cancelled")
            return False
        except AccountInactiveError:
            status.state = SyncState.disabled
            self._logger.info(f"Account {account_id} is no longer active, stopping its worker")
            return True
        except Exception as e:
            status.consecutive_failures += 1
            status.last_error = str(e)
            status.state = SyncState.backoff
            self._logger.warning(
                f"Sync for account {account_id} failed ({status.consecutive_failures} in a row), "
                f"backing off {self.backoff_delay(status.consecutive_failures)}s: {e}"
            )
            return True
        finally:
            if self._inflight.get(account_id) is task:
                del self._inflight[account_id]

        status.consecutive_failures = 0
        status.last_error = None
        status.last_result = result
        if status.state is SyncState.syncing:
            status.state = SyncState.idle
        return True

    def status(self) -> dict[int, AccountSyncStatus]:
        return dict(self._statuses)

    def is_registered(self, account_id: int) -> bool:
        status = self._statuses.get(account_id)
        return status is not None and status.state is not SyncState.disabled

    async def stop(self) -> None:
        for account_id in list(self._workers):
            await self.remove_account(account_id)

    async def _worker(self, account_id: int) -> None:
        while True:
            status = self._statuses.get(account_id)
            if status is None or status.state is SyncState.disabled:
                self._workers.pop(account_id, None)
                return

            await self.tick(account_id)

            if status.state is SyncState.backoff:
                await self._sleep(self.backoff_delay(status.consecutive_failures))
                if status.state is SyncState.backoff:
                    status.state = SyncState.idle
            elif status.state is not SyncState.disabled:
                await self._sleep(status.frequency_seconds)
