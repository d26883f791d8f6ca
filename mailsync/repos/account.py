from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import select, update

from mailsync.models.account import EmailAccount
from mailsync.repos.base import BaseRepo


class AccountRepo(BaseRepo[EmailAccount]):
    """Repository for EmailAccount model operations."""

    def __init__(self) -> None:
        super().__init__(EmailAccount)

    async def get_for_user(self, user_id: str, uuid: UUID) -> EmailAccount | None:
        """Get an account by public id, only if it belongs to the user."""
        query = self.base_stmt.where(EmailAccount.user_id == user_id, EmailAccount.uuid == uuid)
        result = await self.execute(query)
        return result.one_or_none()

    async def get_by_user_and_address(self, user_id: str, email_address: str) -> EmailAccount | None:
        query = self.base_stmt.where(
            EmailAccount.user_id == user_id, EmailAccount.email_address == email_address.lower()
        )
        result = await self.execute(query)
        return result.one_or_none()

    async def list_for_user(self, user_id: str) -> Sequence[EmailAccount]:
        query = self.base_stmt.where(EmailAccount.user_id == user_id).order_by(
            EmailAccount.is_default.desc(), EmailAccount.created_at
        )
        result = await self.execute(query)
        return result.all()

    async def get_all_syncable(self) -> Sequence[EmailAccount]:
        """Get all active accounts with sync enabled."""
        query = self.base_stmt.where(EmailAccount.is_active.is_(True), EmailAccount.sync_enabled.is_(True))
        result = await self.execute(query)
        return result.all()

    async def is_syncable(self, account_id: int) -> bool:
        """Read the flags from the database, not from the copy held in this session."""
        query = select(EmailAccount.is_active, EmailAccount.sync_enabled).where(EmailAccount.id == account_id)
        row = (await self._db.session.execute(query)).first()
        return row is not None and row.is_active and row.sync_enabled

    async def store_tokens(
        self,
        account_id: int,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool:
        """Write freshly encrypted tokens by id, unless another transaction holds the row.

        Returns False when the row is locked or not yet committed; that transaction
        writes the tokens itself. The caller's session scope commits.
        """
        values: dict[str, object] = {"access_token": access_token, "token_expires_at": expires_at}
        if refresh_token is not None:
            values["refresh_token"] = refresh_token
        lockable = select(EmailAccount.id).where(EmailAccount.id == account_id).with_for_update(skip_locked=True)
        stmt = (
            update(EmailAccount)
            .where(EmailAccount.id.in_(lockable.scalar_subquery()))
            .values(**values)
            .returning(EmailAccount.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.session.execute(stmt)
        return result.first() is not None

    async def update_sync_progress(
        self, account: EmailAccount, cursor: str | None, synced_at: datetime | None = None
    ) -> EmailAccount:
        values: dict[str, object] = {"sync_cursor": cursor}
        if synced_at is not None:
            values["last_sync_at"] = synced_at
        return await self.update(account, values)

    async def clear_default(self, user_id: str) -> None:
        stmt = (
            update(EmailAccount)
            .where(EmailAccount.user_id == user_id, EmailAccount.is_default.is_(True))
            .values(is_default=False)
        )
        await self._db.session.execute(stmt)
        await self.flush()
