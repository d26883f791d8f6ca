from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import or_, update
from sqlalchemy.dialects.postgresql import insert

from mailsync.models.sync_health import SyncHealth
from mailsync.repos.base import BaseRepo


class SyncHealthRepo(BaseRepo[SyncHealth]):
    """Repository for SyncHealth model operations."""

    def __init__(self) -> None:
        super().__init__(SyncHealth)

    async def get_for_account(self, account_id: int) -> SyncHealth | None:
        result = await self.execute(self.base_stmt.where(SyncHealth.email_account_id == account_id))
        return result.one_or_none()

    async def list_for_accounts(self, account_ids: Sequence[int]) -> Sequence[SyncHealth]:
        if not account_ids:
            return []
        result = await self.execute(self.base_stmt.where(SyncHealth.email_account_id.in_(account_ids)))
        return result.all()

    async def claim_lease(self, account_id: int, owner: str, at: datetime, ttl_seconds: int) -> bool:
        """Take the account's sync lease unless another live owner holds it. Commits on its own."""
        await self._db.session.execute(
            insert(SyncHealth)
            .values(email_account_id=account_id, consecutive_failures=0, is_flagged=False)
            .on_conflict_do_nothing(index_elements=["email_account_id"])
        )
        stmt = (
            update(SyncHealth)
            .where(
                SyncHealth.email_account_id == account_id,
                or_(SyncHealth.lease_expires_at.is_(None), SyncHealth.lease_expires_at < at),
            )
            .values(lease_owner=owner, lease_expires_at=at + timedelta(seconds=ttl_seconds))
            .returning(SyncHealth.id)
        )
        claimed = (await self._db.session.execute(stmt)).first() is not None
        await self.commit()
        return claimed

    async def release_lease(self, account_id: int, owner: str) -> None:
        stmt = (
            update(SyncHealth)
            .where(SyncHealth.email_account_id == account_id, SyncHealth.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
        )
        await self._db.session.execute(stmt)
        await self.commit()

    async def record_success(self, account_id: int, at: datetime) -> SyncHealth:
        """Reset the failure streak and clear the flag."""
        stmt = insert(SyncHealth).values(
            email_account_id=account_id, consecutive_failures=0, last_error=None, is_flagged=False, last_success_at=at
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["email_account_id"],
            set_={"consecutive_failures": 0, "last_error": None, "is_flagged": False, "last_success_at": at},
        )
        await self._db.session.execute(stmt)
        return await self._reload(account_id)

    async def record_failure(
        self, account_id: int, error_message: str, at: datetime, flag_threshold: int
    ) -> SyncHealth:
        """Extend the failure streak; flag the account once it reaches the threshold."""
        current = await self.get_for_account(account_id)
        failures = (current.consecutive_failures if current else 0) + 1
        flagged = failures >= flag_threshold

        stmt = insert(SyncHealth).values(
            email_account_id=account_id,
            consecutive_failures=failures,
            last_error=error_message,
            last_failure_at=at,
            is_flagged=flagged,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["email_account_id"],
            set_={
                "consecutive_failures": failures,
                "last_error": error_message,
                "last_failure_at": at,
                "is_flagged": flagged,
            },
        )
        await self._db.session.execute(stmt)
        return await self._reload(account_id)

    async def _reload(self, account_id: int) -> SyncHealth:
        await self.flush()
        health = await self.get_for_account(account_id)
        if health is None:
            raise ValueError(f"Failed to create/update sync health for account {account_id}")
        await self._db.session.refresh(health)
        return health
