from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, WithUUID
from .decorators.types import JSONList


class EmailThread(Base, WithUUID, TimestampMixin):
    """A locally assembled group of related messages.

    Threads never hold references to their messages; look messages up by thread_id.
    """

    __tablename__ = "email_threads"

    user_id: Mapped[str] = mapped_column(sa.String(255), nullable=False, index=True)
    subject: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    normalized_subject: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    participant_emails: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    last_message_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    message_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    labels: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    is_archived: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    __table_args__ = (sa.Index("ix_email_threads_user_subject", "user_id", "normalized_subject"),)

    def __repr__(self) -> str:
        return f"<EmailThread(subject='{self.subject}', messages={self.message_count})>"
