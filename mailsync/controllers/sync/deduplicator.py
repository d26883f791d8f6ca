import logging
from enum import Enum

from sqlalchemy.exc import IntegrityError

from mailsync.controllers.adapters.base import Cursor, RawMessage
from mailsync.controllers.sync.thread_assembler import ThreadAssembler
from mailsync.models.account import EmailAccount
from mailsync.models.message import EmailAttachment, EmailMessage, MessageType
from mailsync.repos.account import AccountRepo
from mailsync.repos.message import MessageRepo
from mailsync.utils.locks import KeyedLock


class PersistOutcome(Enum):
    stored = "stored"
    duplicate = "duplicate"
    # A pending interrupted send that this fetched message confirms.
    confirmed = "confirmed"


class Deduplicator:
    """Persists fetched messages at most once per (account, external id).

    The existence check and the insert run under a per-account lock and are
    backed by the unique constraint. The account cursor, when given, is
    committed in the same transaction as the message it covers.
    """

    def __init__(self, message_repo: MessageRepo, account_repo: AccountRepo, thread_assembler: ThreadAssembler) -> None:
        self._logger = logging.getLogger(__name__)
        self._message_repo = message_repo
        self._account_repo = account_repo
        self._threads = thread_assembler
        self._locks = KeyedLock()

    async def persist(self, account: EmailAccount, raw: RawMessage, advance_to: Cursor | None = None) -> PersistOutcome:
        async with self._locks(account.id):
            if await self._message_repo.exists_for_account(account.id, raw.external_id):
                await self._advance(account, advance_to)
                return PersistOutcome.duplicate

            if raw.rfc_message_id:
                pending = await self._message_repo.get_pending_by_rfc_id(account.id, raw.rfc_message_id)
                if pending is not None:
                    self._stage_cursor(account, advance_to)
                    await self._message_repo.confirm_sent(pending, raw.external_id)
                    self._logger.info(f"Confirmed interrupted send {raw.rfc_message_id} for account {account.id}")
                    return PersistOutcome.confirmed

                stored = await self._message_repo.get_stored_by_rfc_id(account.id, raw.rfc_message_id, raw.folder)
                if stored is not None:
                    # Same message under a new external id, e.g. after an IMAP UIDVALIDITY reset.
                    self._stage_cursor(account, advance_to)
                    await self._message_repo.update(stored, {"external_message_id": raw.external_id}, commit=True)
                    self._logger.info(f"Re-keyed message {stored.id} to {raw.external_id} for account {account.id}")
                    return PersistOutcome.duplicate

            try:
                async with self._threads.lock(account.user_id):
                    await self._insert(account, raw)
                    self._stage_cursor(account, advance_to)
                    await self._message_repo.commit()
            except IntegrityError:
                # Another process stored it between the check and the insert.
                await self._message_repo.rollback()
                await self._account_repo.refresh(account)
                self._logger.debug(f"Message {raw.external_id} for account {account.id} stored concurrently")
                await self._advance(account, advance_to)
                return PersistOutcome.duplicate

            return PersistOutcome.stored

    async def _insert(self, account: EmailAccount, raw: RawMessage) -> EmailMessage:
        thread = await self._threads.assign_thread(
            user_id=account.user_id,
            subject=raw.subject,
            participants=raw.participants,
            message_at=raw.sent_at,
            account_id=account.id,
            provider_thread_id=raw.provider_thread_id,
            labels=[raw.folder] if raw.folder else None,
            own_address=account.email_address,
        )
        message = EmailMessage(
            thread_id=thread.id,
            email_account_id=account.id,
            user_id=account.user_id,
            external_message_id=raw.external_id,
            provider_thread_id=raw.provider_thread_id,
            rfc_message_id=raw.rfc_message_id,
            from_email=raw.from_email,
            to_emails=list(raw.to_emails),
            cc_emails=list(raw.cc_emails),
            bcc_emails=list(raw.bcc_emails),
            subject=raw.subject,
            html_body=raw.html_body,
            text_body=raw.text_body,
            message_type=MessageType.sent if raw.is_outgoing else MessageType.received,
            is_read=raw.is_read,
            is_starred=raw.is_starred,
            is_important=raw.is_important,
            sent_at=raw.sent_at,
            external_folder=raw.folder,
            needs_reconciliation=False,
        )
        await self._message_repo.add(message)

        if raw.attachments:
            await self._message_repo.add_attachments(
                message,
                [
                    EmailAttachment(
                        file_name=attachment.file_name,
                        file_size=attachment.size,
                        mime_type=attachment.mime_type,
                        external_attachment_id=attachment.external_id,
                        content=attachment.content,
                    )
                    for attachment in raw.attachments
                ],
            )
        return message

    def _stage_cursor(self, account: EmailAccount, cursor: Cursor | None) -> None:
        if cursor is not None and not cursor.is_empty:
            account.sync_cursor = cursor.value

    async def _advance(self, account: EmailAccount, cursor: Cursor | None) -> None:
        if cursor is None or cursor.is_empty:
            return
        await self._account_repo.update_sync_progress(account, cursor.value)
        await self._account_repo.commit()
