import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.exceptions import AuthExpiredError
from mailsync.models.account import EmailAccount

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class AuthRetryContext:
    """Refresh attempts for one operation. Create a new one per fetch or send."""

    operation: str
    max_refreshes: int = 1
    refreshes: int = 0

    @property
    def exhausted(self) -> bool:
        return self.refreshes >= self.max_refreshes


async def with_auth_retry(
    credential_store: CredentialStore,
    account: EmailAccount,
    call: Callable[[], Awaitable[T]],
    context: AuthRetryContext,
) -> T:
    """Run `call`; on AuthExpiredError refresh the credential and retry, at most `max_refreshes` times."""
    while True:
        try:
            return await call()
        except AuthExpiredError:
            if context.exhausted:
                raise
            context.refreshes += 1
            logger.info(f"Credential rejected during {context.operation} for account {account.id}, refreshing")
            if account.provider.uses_oauth:
                await credential_store.force_refresh(account)
