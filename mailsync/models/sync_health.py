from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SyncHealth(Base):
    """Tracks consecutive sync failures per account and who currently syncs it."""

    __tablename__ = "sync_health"

    email_account_id: Mapped[int] = mapped_column(
        sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    last_success_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(sa.Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    is_flagged: Mapped[bool] = mapped_column(sa.Boolean, default=False, nullable=False)

    # Held by whichever process is syncing the account right now.
    lease_owner: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SyncHealth(account='{self.email_account_id}', failures={self.consecutive_failures})>"
