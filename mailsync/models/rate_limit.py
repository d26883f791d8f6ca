from datetime import datetime, timedelta
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin
from .decorators.types import EnumStringType


class RateWindowKind(Enum):
    hourly = "hourly"
    daily = "daily"

    @property
    def duration(self) -> timedelta:
        if self is RateWindowKind.hourly:
            return timedelta(hours=1)
        return timedelta(days=1)


class RateLimitWindow(Base, TimestampMixin):
    """Outbound send counter for one account and one window granularity."""

    __tablename__ = "rate_limit_windows"

    email_account_id: Mapped[int] = mapped_column(
        sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    window: Mapped[RateWindowKind] = mapped_column(EnumStringType(RateWindowKind), nullable=False)
    count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    __table_args__ = (sa.UniqueConstraint("email_account_id", "window", name="uq_rate_limit_account_window"),)

    def is_expired(self, now: datetime) -> bool:
        return now - self.window_start > self.window.duration

    @property
    def resets_at(self) -> datetime:
        return self.window_start + self.window.duration

    def __repr__(self) -> str:
        return f"<RateLimitWindow(account={self.email_account_id}, window='{self.window.name}', count={self.count})>"
