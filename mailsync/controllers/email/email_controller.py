import logging
from typing import Sequence
from uuid import UUID

from mailsync.controllers.email.message import DeliverabilityReport
from mailsync.controllers.outbound.dispatcher import DispatchResult, Dispatcher, OutgoingMessage
from mailsync.controllers.outbound.rate_limiter import RateLimiter, WindowUsage
from mailsync.controllers.outbound.spam_scorer import SpamScorer, validate_recipient
from mailsync.exceptions import EntityNotFoundError
from mailsync.models.account import EmailAccount
from mailsync.models.rate_limit import RateWindowKind
from mailsync.models.thread import EmailThread
from mailsync.repos.account import AccountRepo
from mailsync.repos.message import MessageRepo
from mailsync.repos.thread import ThreadFilters, ThreadRepo


class EmailController:
    """Controller for thread listing, sending and deliverability checks."""

    def __init__(
        self,
        account_repo: AccountRepo,
        thread_repo: ThreadRepo,
        message_repo: MessageRepo,
        dispatcher: Dispatcher,
        rate_limiter: RateLimiter,
        spam_scorer: SpamScorer,
    ):
        self._logger = logging.getLogger(__name__)
        self._account_repo = account_repo
        self._thread_repo = thread_repo
        self._message_repo = message_repo
        self._dispatcher = dispatcher
        self._rate_limiter = rate_limiter
        self._spam_scorer = spam_scorer

    async def list_threads(self, user_id: str, filters: ThreadFilters) -> Sequence[EmailThread]:
        return await self._thread_repo.list_for_user(user_id, filters)

    async def send_email(
        self,
        user_id: str,
        account_uuid: UUID,
        message: OutgoingMessage,
        reply_to_message_uuid: UUID | None = None,
        timeout: float | None = None,
    ) -> DispatchResult:
        account = await self._get_account(user_id, account_uuid)

        if reply_to_message_uuid:
            replied = await self._message_repo.get_by_uuid(reply_to_message_uuid)
            if replied is None or replied.user_id != user_id:
                raise EntityNotFoundError(f"Message {reply_to_message_uuid} not found", user=user_id)
            if replied.rfc_message_id:
                self._logger.info(f"Replying to {replied.rfc_message_id}; account_id: {account.id}")
                message.in_reply_to = replied.rfc_message_id

        return await self._dispatcher.send_message(account, message, timeout=timeout)

    def check_deliverability(
        self,
        from_email: str,
        subject: str | None,
        html_body: str | None,
        text_body: str | None,
        recipients: list[str] | None = None,
    ) -> DeliverabilityReport:
        """Read-only: score the draft and check the recipient addresses."""
        return DeliverabilityReport(
            spam=self._spam_scorer.score(from_email, subject, html_body, text_body),
            recipients=[validate_recipient(address) for address in recipients or []],
        )

    async def get_rate_limits(self, user_id: str, account_uuid: UUID) -> dict[RateWindowKind, WindowUsage]:
        account = await self._get_account(user_id, account_uuid)
        return await self._rate_limiter.get_usage(account)

    async def _get_account(self, user_id: str, account_uuid: UUID) -> EmailAccount:
        account = await self._account_repo.get_for_user(user_id, account_uuid)
        if account is None:
            raise EntityNotFoundError(f"Account {account_uuid} not found", user=user_id)
        return account
