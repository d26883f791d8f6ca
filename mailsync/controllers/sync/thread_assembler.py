import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Iterable

from mailsync.models.base import utcnow
from mailsync.models.thread import EmailThread
from mailsync.repos.message import MessageRepo
from mailsync.repos.thread import ThreadRepo
from mailsync.utils.locks import KeyedLock
from settings import settings

REPLY_PREFIX_RE = re.compile(r"^\s*(?:(?:re|fwd|fw)\s*:\s*)+", re.IGNORECASE)


def normalize_subject(subject: str | None) -> str:
    """Strip leading Re:/Fwd:/Fw: tokens, collapse whitespace and lower-case."""
    stripped = REPLY_PREFIX_RE.sub("", subject or "")
    return " ".join(stripped.split()).lower()


def _merge(existing: Iterable[str], new: Iterable[str]) -> list[str]:
    """Ordered union, lower-cased, first occurrence wins."""
    merged: list[str] = []
    for value in (*existing, *new):
        value = value.strip().lower()
        if value and value not in merged:
            merged.append(value)
    return merged


class ThreadAssembler:
    """Groups messages into threads by normalized subject and shared participants.

    A message joins the most recently active thread of the same user that has
    the same normalized subject, shares at least one participant other than
    the mailbox owner and saw a message within the recency window. Otherwise
    a new thread is created.

    Callers hold `lock(user_id)` from assignment until the message is
    committed, so two messages of one conversation cannot open two threads.
    """

    def __init__(
        self,
        thread_repo: ThreadRepo,
        message_repo: MessageRepo,
        recency_days: int | None = None,
        use_provider_thread_ids: bool | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._logger = logging.getLogger(__name__)
        self._thread_repo = thread_repo
        self._message_repo = message_repo
        self._recency = timedelta(days=recency_days if recency_days is not None else settings.sync.thread_recency_days)
        if use_provider_thread_ids is None:
            use_provider_thread_ids = settings.sync.use_provider_thread_ids
        self._use_provider_thread_ids = use_provider_thread_ids
        self._clock = clock
        self.lock = KeyedLock()

    async def assign_thread(
        self,
        user_id: str,
        subject: str | None,
        participants: list[str],
        message_at: datetime | None = None,
        account_id: int | None = None,
        provider_thread_id: str | None = None,
        labels: list[str] | None = None,
        own_address: str | None = None,
    ) -> EmailThread:
        """Find or create the thread for a message and account for it in the thread metadata."""
        message_at = message_at or self._clock()
        normalized = normalize_subject(subject)

        thread = await self._find_by_provider_thread(account_id, provider_thread_id)
        if thread is None and normalized:
            thread = await self._find_by_heuristic(user_id, normalized, participants, own_address)

        if thread is None:
            thread = EmailThread(
                user_id=user_id,
                subject=(subject or "").strip(),
                normalized_subject=normalized,
                participant_emails=_merge([], participants),
                last_message_at=message_at,
                message_count=1,
                labels=_merge([], labels or []),
                is_archived=False,
            )
            await self._thread_repo.add(thread)
            self._logger.debug(f"Created thread '{normalized}' for user {user_id}")
            return thread

        values: dict[str, object] = {
            "message_count": thread.message_count + 1,
            "last_message_at": max(thread.last_message_at, message_at),
            "participant_emails": _merge(thread.participant_emails, participants),
        }
        if labels:
            values["labels"] = _merge(thread.labels, labels)
        return await self._thread_repo.update(thread, values)

    async def _find_by_provider_thread(
        self, account_id: int | None, provider_thread_id: str | None
    ) -> EmailThread | None:
        if not (self._use_provider_thread_ids and account_id and provider_thread_id):
            return None
        thread_id = await self._message_repo.find_thread_id_by_provider_thread(account_id, provider_thread_id)
        if thread_id is None:
            return None
        return await self._thread_repo.get(thread_id)

    async def _find_by_heuristic(
        self, user_id: str, normalized: str, participants: list[str], own_address: str | None
    ) -> EmailThread | None:
        # The mailbox owner is on every message, so only the other participants count.
        own = {own_address.strip().lower()} if own_address else set()
        wanted = {participant.strip().lower() for participant in participants if participant} - own
        since = self._clock() - self._recency
        # Most recent first, so the first match wins the tie-break.
        for candidate in await self._thread_repo.find_candidates(user_id, normalized, since):
            others = set(candidate.participant_emails) - own
            if wanted & others or not (wanted or others):
                return candidate
        return None

    async def detach_message(self, thread_id: int | None) -> None:
        """Account for a deleted message: shrink its thread, or drop the thread once it is empty.

        Callers hold `lock(user_id)` and delete the message first.
        """
        if thread_id is None:
            return
        thread = await self._thread_repo.get(thread_id)
        if thread is None:
            return
        if thread.message_count <= 1:
            await self._thread_repo.delete(thread)
            self._logger.debug(f"Dropped empty thread {thread_id}")
            return
        await self._thread_repo.update(thread, {"message_count": thread.message_count - 1})
