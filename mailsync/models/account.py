from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import UniqueConstraint

from .base import Base, TimestampMixin, WithUUID
from .decorators.types import EnumStringType


class ProviderKind(Enum):
    gmail = "gmail"
    outlook = "outlook"
    smtp = "smtp"

    @property
    def uses_oauth(self) -> bool:
        return self is not ProviderKind.smtp


class EmailAccount(Base, WithUUID, TimestampMixin):
    """A user-linked mailbox used for fetching and sending mail."""

    __tablename__ = "email_accounts"

    user_id: Mapped[str] = mapped_column(sa.String(255), nullable=False, index=True)
    account_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    email_address: Mapped[str] = mapped_column(sa.String(320), nullable=False)
    provider: Mapped[ProviderKind] = mapped_column(EnumStringType(ProviderKind), nullable=False)

    # OAuth2 providers. Tokens are Fernet-encrypted.
    access_token: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    # Generic IMAP/SMTP. Password is Fernet-encrypted.
    imap_host: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    imap_port: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    imap_secure: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)
    smtp_host: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    smtp_port: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    smtp_secure: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)
    username: Mapped[str | None] = mapped_column(sa.String(320), nullable=True)
    password: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    is_default: Mapped[bool] = mapped_column(sa.Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)
    sync_enabled: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)
    sync_frequency_seconds: Mapped[int] = mapped_column(sa.Integer, default=15, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    sync_cursor: Mapped[str | None] = mapped_column(
        sa.Text, nullable=True, comment="historyId for gmail, highest UID for imap, delta link for outlook"
    )

    inbox_folder: Mapped[str] = mapped_column(sa.String(255), default="INBOX", nullable=False)
    sent_folder: Mapped[str] = mapped_column(sa.String(255), default="SENT", nullable=False)
    drafts_folder: Mapped[str] = mapped_column(sa.String(255), default="DRAFTS", nullable=False)
    trash_folder: Mapped[str] = mapped_column(sa.String(255), default="TRASH", nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "email_address", name="uq_email_account_user_address"),)

    @property
    def should_sync(self) -> bool:
        return self.is_active and self.sync_enabled

    @property
    def domain(self) -> str:
        return self.email_address.rsplit("@", 1)[-1]

    def __repr__(self) -> str:
        return f"<EmailAccount(email='{self.email_address}', provider='{self.provider.name}')>"
