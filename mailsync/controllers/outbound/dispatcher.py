import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from mailsync.controllers.adapters.base import AttachmentInfo, OutboundDraft
from mailsync.controllers.adapters.mime import generate_message_id, normalize_address
from mailsync.controllers.adapters.registry import AdapterRegistry
from mailsync.controllers.credentials.auth_retry import AuthRetryContext, with_auth_retry
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.controllers.outbound.rate_limiter import RateLimitDecision, RateLimiter
from mailsync.controllers.outbound.spam_scorer import SpamScorer, SpamScoreResult, sanitize_html
from mailsync.controllers.sync.thread_assembler import ThreadAssembler
from mailsync.exceptions import (
    AccountInactiveError,
    InvalidDataError,
    RateLimitExceededError,
    SendOutcomeUnknownError,
    SpamScoreTooHighError,
)
from mailsync.models.account import EmailAccount
from mailsync.models.base import utcnow
from mailsync.models.message import EmailAttachment, EmailMessage, MessageType
from mailsync.models.thread import EmailThread
from mailsync.repos.message import MessageRepo
from settings import settings


@dataclass
class OutgoingMessage:
    to: list[str]
    subject: str
    text_body: str
    html_body: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    attachments: list[AttachmentInfo] = field(default_factory=list)
    in_reply_to: str | None = None
    # Send even when the spam score is at or above the hard ceiling.
    override_spam_check: bool = False


@dataclass
class DispatchResult:
    message: EmailMessage
    thread: EmailThread
    spam: SpamScoreResult
    rate_limits: RateLimitDecision


class Dispatcher:
    """The only path that transmits mail.

    Order: account active, rate limit (counted even if the send later fails),
    spam ceiling, provider send under a timeout, then the sent message is
    stored in its thread. A send that is interrupted by the timeout or by
    cancellation is stored with `needs_reconciliation` so the next sync of the
    account can confirm it with the provider.
    """

    def __init__(
        self,
        message_repo: MessageRepo,
        adapters: AdapterRegistry,
        credential_store: CredentialStore,
        rate_limiter: RateLimiter,
        spam_scorer: SpamScorer,
        thread_assembler: ThreadAssembler,
        send_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._message_repo = message_repo
        self._adapters = adapters
        self._credentials = credential_store
        self._rate_limiter = rate_limiter
        self._spam_scorer = spam_scorer
        self._threads = thread_assembler
        self._send_timeout = send_timeout or settings.outbound.send_timeout
        self._clock = clock

    async def send_message(
        self, account: EmailAccount, message: OutgoingMessage, timeout: float | None = None
    ) -> DispatchResult:
        if not account.is_active:
            raise AccountInactiveError(f"Account {account.email_address} is disabled", account_id=account.id)
        self._validate(message)

        decision = await self._rate_limiter.check_and_increment(account)
        if not decision.allowed:
            exceeded = ", ".join(kind.value for kind in decision.exceeded)
            raise RateLimitExceededError(
                f"Send limit reached for {account.email_address} ({exceeded})",
                account_id=account.id,
                details={"usage": decision.to_dict()},
            )

        spam = self._spam_scorer.score(account.email_address, message.subject, message.html_body, message.text_body)
        if spam.is_blocked:
            if not message.override_spam_check:
                raise SpamScoreTooHighError(
                    f"Spam score {spam.score} is at or above {settings.outbound.spam_hard_block_score}",
                    account_id=account.id,
                    details={"score": spam.score, "issues": spam.issues, "recommendations": spam.recommendations},
                )
            self._logger.warning(f"Sending from account {account.id} with spam score {spam.score} on override")

        draft = OutboundDraft(
            from_email=account.email_address,
            from_name=account.account_name,
            to=[normalize_address(address) for address in message.to],
            cc=[normalize_address(address) for address in message.cc],
            bcc=[normalize_address(address) for address in message.bcc],
            subject=message.subject,
            text_body=message.text_body,
            html_body=sanitize_html(message.html_body) if message.html_body else None,
            attachments=message.attachments,
            rfc_message_id=generate_message_id(account.domain),
            in_reply_to=message.in_reply_to,
            references=[message.in_reply_to] if message.in_reply_to else [],
        )

        external_id = await self._transmit(account, draft, timeout or self._send_timeout)
        stored, thread = await self._store(account, draft, external_id, pending=False)
        self._logger.info(f"Sent message {draft.rfc_message_id} from account {account.id}")
        return DispatchResult(message=stored, thread=thread, spam=spam, rate_limits=decision)

    def _validate(self, message: OutgoingMessage) -> None:
        if not message.to:
            raise InvalidDataError("At least one recipient is required")
        if not message.subject or not message.subject.strip():
            raise InvalidDataError("Subject is required")
        min_length = settings.outbound.min_text_body_length
        if len((message.text_body or "").strip()) < min_length:
            raise InvalidDataError(f"Plain text body must be at least {min_length} characters")

    async def _transmit(self, account: EmailAccount, draft: OutboundDraft, timeout: float) -> str:
        adapter = self._adapters.for_account(account)
        send = with_auth_retry(
            self._credentials, account, lambda: adapter.send(account, draft), AuthRetryContext(operation="send")
        )
        try:
            return await asyncio.wait_for(send, timeout=timeout)
        except asyncio.TimeoutError:
            await self._store(account, draft, None, pending=True)
            raise SendOutcomeUnknownError(
                f"Send timed out after {timeout}s; it will be confirmed on the next sync",
                account_id=account.id,
                details={"rfc_message_id": draft.rfc_message_id},
            )
        except asyncio.CancelledError:
            # Record the ambiguous send even though the caller is going away.
            await asyncio.shield(self._store(account, draft, None, pending=True))
            raise

    async def _store(
        self, account: EmailAccount, draft: OutboundDraft, external_id: str | None, pending: bool
    ) -> tuple[EmailMessage, EmailThread]:
        now = self._clock()
        async with self._threads.lock(account.user_id):
            thread = await self._threads.assign_thread(
                user_id=account.user_id,
                subject=draft.subject,
                participants=[draft.from_email, *draft.to, *draft.cc],
                message_at=now,
                labels=[account.sent_folder],
                own_address=account.email_address,
            )
            message = EmailMessage(
                thread_id=thread.id,
                email_account_id=account.id,
                user_id=account.user_id,
                external_message_id=external_id,
                rfc_message_id=draft.rfc_message_id,
                from_email=draft.from_email,
                to_emails=draft.to,
                cc_emails=draft.cc,
                bcc_emails=draft.bcc,
                subject=draft.subject,
                html_body=draft.html_body,
                text_body=draft.text_body,
                message_type=MessageType.sent,
                is_read=True,
                is_starred=False,
                is_important=False,
                sent_at=now,
                external_folder=account.sent_folder,
                needs_reconciliation=pending,
            )
            await self._message_repo.add(message)
            if draft.attachments:
                await self._message_repo.add_attachments(
                    message,
                    [
                        EmailAttachment(
                            file_name=attachment.file_name,
                            file_size=attachment.size or len(attachment.content or b""),
                            mime_type=attachment.mime_type,
                            content=attachment.content,
                        )
                        for attachment in draft.attachments
                    ],
                )
            await self._message_repo.commit()

        if pending:
            self._logger.warning(f"Send of {draft.rfc_message_id} from account {account.id} needs reconciliation")
        return message, thread
