from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from mailsync.models.thread import EmailThread


class ThreadData(BaseModel):
    id: UUID
    subject: str
    participants: list[str]
    last_message_at: datetime
    message_count: int
    labels: list[str]
    is_archived: bool

    @classmethod
    def from_model(cls, thread: EmailThread) -> "ThreadData":
        return cls(
            id=thread.uuid,
            subject=thread.subject,
            participants=list(thread.participant_emails),
            last_message_at=thread.last_message_at,
            message_count=thread.message_count,
            labels=list(thread.labels),
            is_archived=thread.is_archived,
        )


class ThreadListResponse(BaseModel):
    request_id: str
    data: list[ThreadData]
    next_offset: int | None = None
