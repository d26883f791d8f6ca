import pytest
from fakes import FakeAdapter, FakeMessageRepo, FakeThreadRepo

from mailsync.controllers.adapters.base import AttachmentInfo
from mailsync.controllers.outbound.dispatcher import Dispatcher, OutgoingMessage
from mailsync.controllers.outbound.rate_limiter import RateLimiter
from mailsync.exceptions import (
    AccountInactiveError,
    InvalidDataError,
    RateLimitExceededError,
    SendOutcomeUnknownError,
    SpamScoreTooHighError,
)
from mailsync.models.account import EmailAccount
from mailsync.models.message import MessageType
from mailsync.models.rate_limit import RateWindowKind

BODY = (
    "Hi Alice, attached are the notes from Tuesday's planning session. "
    "Let me know if anything is missing before we share them with the team."
)


def _message(**overrides: object) -> OutgoingMessage:
    values: dict = {"to": ["Alice@Partner.com"], "subject": "Planning notes", "text_body": BODY}
    values.update(overrides)
    return OutgoingMessage(**values)


def _spammy(**overrides: object) -> OutgoingMessage:
    return _message(subject="FREE CASH WINNER!!!", text_body="Claim the prize today, buy now!", **overrides)


async def test_send_stores_message_in_thread(
    dispatcher: Dispatcher,
    adapter: FakeAdapter,
    message_repo: FakeMessageRepo,
    thread_repo: FakeThreadRepo,
    account: EmailAccount,
) -> None:
    result = await dispatcher.send_message(account, _message())

    assert len(adapter.sent) == 1
    draft = adapter.sent[0]
    assert draft.to == ["alice@partner.com"]
    assert draft.from_email == "me@example.com"
    assert draft.rfc_message_id and draft.rfc_message_id.endswith("@example.com>")

    assert result.message.external_message_id == "sent-1"
    assert result.message.message_type is MessageType.sent
    assert result.message.needs_reconciliation is False
    assert result.thread.id in thread_repo.rows
    assert result.thread.labels == ["sent"]
    assert result.rate_limits.usage[RateWindowKind.hourly].count == 1
    assert result.spam.score == 0
    assert list(message_repo.rows.values()) == [result.message]


async def test_reply_joins_the_thread_of_the_original(
    dispatcher: Dispatcher, thread_repo: FakeThreadRepo, account: EmailAccount
) -> None:
    first = await dispatcher.send_message(account, _message())
    reply = await dispatcher.send_message(
        account, _message(subject="Re: Planning notes", in_reply_to=first.message.rfc_message_id)
    )

    assert reply.thread.id == first.thread.id
    assert reply.thread.message_count == 2
    assert len(thread_repo.rows) == 1


async def test_blocked_send_still_consumes_quota(
    dispatcher: Dispatcher, adapter: FakeAdapter, rate_limiter: RateLimiter, account: EmailAccount
) -> None:
    with pytest.raises(SpamScoreTooHighError) as exc_info:
        await dispatcher.send_message(account, _spammy())

    assert exc_info.value.details["score"] >= 7
    assert exc_info.value.details["issues"]
    assert adapter.sent == []
    usage = await rate_limiter.get_usage(account)
    assert usage[RateWindowKind.hourly].count == 1


async def test_override_sends_despite_spam_score(
    dispatcher: Dispatcher, adapter: FakeAdapter, account: EmailAccount
) -> None:
    result = await dispatcher.send_message(account, _spammy(override_spam_check=True))

    assert result.spam.is_blocked
    assert len(adapter.sent) == 1


async def test_send_refused_once_limit_reached(
    dispatcher: Dispatcher, adapter: FakeAdapter, account: EmailAccount
) -> None:
    for _ in range(3):
        await dispatcher.send_message(account, _message())

    with pytest.raises(RateLimitExceededError) as exc_info:
        await dispatcher.send_message(account, _message())

    assert exc_info.value.details["usage"]["hourly"]["remaining"] == 0
    assert len(adapter.sent) == 3


async def test_timed_out_send_is_stored_for_reconciliation(
    dispatcher: Dispatcher, adapter: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount
) -> None:
    adapter.send_delay = 5

    with pytest.raises(SendOutcomeUnknownError) as exc_info:
        await dispatcher.send_message(account, _message(), timeout=0.05)

    [pending] = message_repo.rows.values()
    assert pending.needs_reconciliation is True
    assert pending.external_message_id is None
    assert pending.rfc_message_id == exc_info.value.details["rfc_message_id"]


async def test_disabled_account_cannot_send(
    dispatcher: Dispatcher, adapter: FakeAdapter, rate_limiter: RateLimiter, account: EmailAccount
) -> None:
    account.is_active = False

    with pytest.raises(AccountInactiveError):
        await dispatcher.send_message(account, _message())

    assert adapter.sent == []
    assert (await rate_limiter.get_usage(account))[RateWindowKind.hourly].count == 0


@pytest.mark.parametrize(
    "overrides",
    [{"to": []}, {"subject": "   "}, {"text_body": "hi"}],
)
async def test_invalid_messages_are_rejected(
    dispatcher: Dispatcher, adapter: FakeAdapter, account: EmailAccount, overrides: dict
) -> None:
    with pytest.raises(InvalidDataError):
        await dispatcher.send_message(account, _message(**overrides))

    assert adapter.sent == []


async def test_html_is_sanitized_and_attachments_stored(
    dispatcher: Dispatcher, adapter: FakeAdapter, message_repo: FakeMessageRepo, account: EmailAccount
) -> None:
    attachment = AttachmentInfo(file_name="notes.txt", mime_type="text/plain", content=b"hello")

    await dispatcher.send_message(
        account,
        _message(html_body=f"<p onclick='x()'>{BODY}</p><script>x()</script>", attachments=[attachment]),
    )

    html = adapter.sent[0].html_body or ""
    assert "script" not in html
    assert "onclick" not in html
    [stored] = message_repo.attachments
    assert stored.file_name == "notes.txt"
    assert stored.file_size == 5
