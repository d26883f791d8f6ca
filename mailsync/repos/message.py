from typing import Sequence

from sqlalchemy import func, select

from mailsync.models.message import EmailAttachment, EmailMessage
from mailsync.repos.base import BaseRepo


class MessageRepo(BaseRepo[EmailMessage]):
    """Repository for EmailMessage and EmailAttachment operations."""

    def __init__(self) -> None:
        super().__init__(EmailMessage)

    async def exists_for_account(self, account_id: int, external_message_id: str) -> bool:
        """Whether the dedup key is already stored."""
        query = select(func.count(EmailMessage.id)).where(
            EmailMessage.email_account_id == account_id,
            EmailMessage.external_message_id == external_message_id,
        )
        result = await self._db.session.execute(query)
        return bool(result.scalar_one())

    async def find_thread_id_by_provider_thread(self, account_id: int, provider_thread_id: str) -> int | None:
        query = (
            select(EmailMessage.thread_id)
            .where(
                EmailMessage.email_account_id == account_id,
                EmailMessage.provider_thread_id == provider_thread_id,
            )
            .limit(1)
        )
        result = await self._db.session.execute(query)
        return result.scalar_one_or_none()

    async def get_pending_reconciliation(self, account_id: int) -> Sequence[EmailMessage]:
        query = self.base_stmt.where(
            EmailMessage.email_account_id == account_id, EmailMessage.needs_reconciliation.is_(True)
        ).order_by(EmailMessage.created_at)
        result = await self.execute(query)
        return result.all()

    async def get_pending_by_rfc_id(self, account_id: int, rfc_message_id: str) -> EmailMessage | None:
        query = self.base_stmt.where(
            EmailMessage.email_account_id == account_id,
            EmailMessage.rfc_message_id == rfc_message_id,
            EmailMessage.needs_reconciliation.is_(True),
        )
        result = await self.execute(query)
        return result.first()

    async def get_stored_by_rfc_id(
        self, account_id: int, rfc_message_id: str, folder: str | None
    ) -> EmailMessage | None:
        """A synced (not pending) message with this Message-ID in the folder, whatever its external id."""
        query = self.base_stmt.where(
            EmailMessage.email_account_id == account_id,
            EmailMessage.rfc_message_id == rfc_message_id,
            EmailMessage.external_folder == folder,
            EmailMessage.needs_reconciliation.is_(False),
        )
        result = await self.execute(query)
        return result.first()

    async def confirm_sent(self, message: EmailMessage, external_message_id: str | None) -> EmailMessage:
        return await self.update(
            message, {"needs_reconciliation": False, "external_message_id": external_message_id}, commit=True
        )

    async def count_for_account(self, account_id: int) -> int:
        query = select(func.count(EmailMessage.id)).where(EmailMessage.email_account_id == account_id)
        result = await self._db.session.execute(query)
        return int(result.scalar_one())

    async def list_for_thread(self, thread_id: int) -> Sequence[EmailMessage]:
        query = self.base_stmt.where(EmailMessage.thread_id == thread_id).order_by(EmailMessage.sent_at)
        result = await self.execute(query)
        return result.all()

    async def add_attachments(self, message: EmailMessage, attachments: Sequence[EmailAttachment]) -> None:
        for attachment in attachments:
            attachment.message_id = message.id
            self._db.session.add(attachment)
        await self.flush()
