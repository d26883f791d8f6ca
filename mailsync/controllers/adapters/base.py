"""
Provider-neutral types shared by every protocol adapter.

Nothing provider specific crosses this boundary: adapters translate Gmail JSON,
Graph JSON and IMAP literals into RawMessage, and OutboundDraft back into the
provider's wire format.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from mailsync.models.account import EmailAccount, ProviderKind


@dataclass(frozen=True)
class Cursor:
    """Opaque per-account progress marker."""

    value: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.value

    def as_uid(self) -> int:
        """The UID of an IMAP cursor, written "<uidvalidity>:<uid>" or as a bare "<uid>"."""
        if not self.value:
            return 0
        try:
            return int(self.value.rpartition(":")[2])
        except ValueError:
            return 0

    @property
    def uid_validity(self) -> str | None:
        validity, _, _ = (self.value or "").rpartition(":")
        return validity or None

    @classmethod
    def for_uid(cls, uid_validity: str | None, uid: int) -> "Cursor":
        return cls(f"{uid_validity}:{uid}" if uid_validity else str(uid))


@dataclass
class AttachmentInfo:
    file_name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    content: bytes | None = None
    external_id: str | None = None


@dataclass
class RawMessage:
    external_id: str
    subject: str
    from_email: str
    to_emails: list[str] = field(default_factory=list)
    cc_emails: list[str] = field(default_factory=list)
    bcc_emails: list[str] = field(default_factory=list)
    html_body: str | None = None
    text_body: str | None = None
    sent_at: datetime | None = None
    folder: str | None = None
    rfc_message_id: str | None = None
    provider_thread_id: str | None = None
    is_read: bool = False
    is_starred: bool = False
    is_important: bool = False
    is_outgoing: bool = False
    attachments: list[AttachmentInfo] = field(default_factory=list)
    # Cursor value that is safe to store once this message is persisted.
    position: Cursor | None = None

    @property
    def participants(self) -> list[str]:
        return [self.from_email, *self.to_emails, *self.cc_emails]


@dataclass
class SkippedMessage:
    external_id: str
    reason: str
    position: Cursor | None = None


@dataclass
class FetchResult:
    messages: list[RawMessage]
    cursor: Cursor
    skipped: list[SkippedMessage] = field(default_factory=list)


@dataclass
class OutboundDraft:
    from_email: str
    to: list[str]
    subject: str
    text_body: str
    html_body: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    from_name: str | None = None
    attachments: list[AttachmentInfo] = field(default_factory=list)
    rfc_message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)

    @property
    def recipients(self) -> list[str]:
        return [*self.to, *self.cc, *self.bcc]


class ProtocolAdapter(ABC):
    """Uniform fetch/send interface over one provider kind."""

    provider: ProviderKind

    @abstractmethod
    async def fetch(self, account: EmailAccount, cursor: Cursor, max_batch: int) -> FetchResult:
        """Fetch messages newer than the cursor, oldest first, at most max_batch."""

    @abstractmethod
    async def send(self, account: EmailAccount, draft: OutboundDraft) -> str:
        """Transmit the draft and return the provider's id for the sent message."""

    @abstractmethod
    async def verify(self, account: EmailAccount) -> str:
        """Check the credentials work and return the mailbox address."""

    async def find_sent(self, account: EmailAccount, rfc_message_id: str) -> str | None:
        """Look up a sent message by RFC Message-ID. Returns its provider id, if found."""
        return None

    async def close(self) -> None:
        return None
