from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import cast, or_
from sqlalchemy.dialects.postgresql import JSONB

from mailsync.models.thread import EmailThread
from mailsync.repos.base import BaseRepo


@dataclass
class ThreadFilters:
    archived: bool | None = None
    label: str | None = None
    search: str | None = None
    limit: int = 50
    offset: int = 0


class ThreadRepo(BaseRepo[EmailThread]):
    """Repository for EmailThread model operations."""

    def __init__(self) -> None:
        super().__init__(EmailThread)

    async def find_candidates(self, user_id: str, normalized_subject: str, since: datetime) -> Sequence[EmailThread]:
        """Threads of the user with the same normalized subject, most recent first."""
        query = (
            self.base_stmt.where(
                EmailThread.user_id == user_id,
                EmailThread.normalized_subject == normalized_subject,
                EmailThread.last_message_at >= since,
            )
            .order_by(EmailThread.last_message_at.desc())
            .with_for_update()
        )
        result = await self.execute(query)
        return result.all()

    async def list_for_user(self, user_id: str, filters: ThreadFilters) -> Sequence[EmailThread]:
        query = self.base_stmt.where(EmailThread.user_id == user_id)
        if filters.archived is not None:
            query = query.where(EmailThread.is_archived.is_(filters.archived))
        if filters.label:
            query = query.where(cast(EmailThread.labels, JSONB).contains([filters.label]))
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(or_(EmailThread.subject.ilike(pattern), EmailThread.normalized_subject.ilike(pattern)))
        query = query.order_by(EmailThread.last_message_at.desc()).limit(filters.limit).offset(filters.offset)
        result = await self.execute(query)
        return result.all()
