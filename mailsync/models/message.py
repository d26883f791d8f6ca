from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, WithUUID
from .decorators.types import EnumStringType, JSONList


class MessageType(Enum):
    sent = "sent"
    received = "received"
    draft = "draft"


class EmailMessage(Base, WithUUID, TimestampMixin):
    """A fetched or composed message.

    `(email_account_id, external_message_id)` is the dedup key for fetched mail.
    """

    __tablename__ = "email_messages"

    thread_id: Mapped[int] = mapped_column(sa.ForeignKey("email_threads.id"), nullable=False, index=True)
    email_account_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=True, index=True
    )
    user_id: Mapped[str] = mapped_column(sa.String(255), nullable=False, index=True)

    external_message_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    provider_thread_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    rfc_message_id: Mapped[str | None] = mapped_column(sa.String(998), nullable=True, index=True)

    from_email: Mapped[str] = mapped_column(sa.String(320), nullable=False, default="")
    to_emails: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    cc_emails: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    bcc_emails: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    subject: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    html_body: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    text_body: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    message_type: Mapped[MessageType] = mapped_column(EnumStringType(MessageType), nullable=False)
    is_read: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    is_starred: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    is_important: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    external_folder: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)

    needs_reconciliation: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False, comment="Send was interrupted; confirm with the provider"
    )

    __table_args__ = (
        sa.UniqueConstraint("email_account_id", "external_message_id", name="uq_email_message_account_external_id"),
    )

    @property
    def participants(self) -> list[str]:
        return [self.from_email, *self.to_emails, *self.cc_emails]

    def __repr__(self) -> str:
        return f"<EmailMessage(external_id='{self.external_message_id}', type='{self.message_type.name}')>"


class EmailAttachment(Base, WithUUID, TimestampMixin):
    __tablename__ = "email_attachments"

    message_id: Mapped[int] = mapped_column(
        sa.ForeignKey("email_messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="application/octet-stream")
    external_attachment_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    content: Mapped[bytes | None] = mapped_column(sa.LargeBinary, nullable=True, deferred=True)
