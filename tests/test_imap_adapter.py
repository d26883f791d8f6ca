from contextlib import asynccontextmanager
from typing import AsyncGenerator

import pytest
from aioimaplib import Response
from fakes import make_account

from mailsync.controllers.adapters.base import Cursor
from mailsync.controllers.adapters.imap_smtp import ImapSmtpAdapter
from mailsync.exceptions import PermanentProtocolError
from mailsync.models.account import EmailAccount


def rfc822(uid: int, subject: str = "Project Update") -> bytes:
    return (
        f"From: Alice <Alice@Partner.com>\r\n"
        f"To: me@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"Date: Mon, 02 Mar 2026 08:{uid % 60:02d}:00 +0000\r\n"
        f"Message-ID: <{uid}@partner.com>\r\n"
        f"Content-Type: text/plain; charset=utf-8\r\n"
        f"\r\n"
        f"Body of message {uid}\r\n"
    ).encode()


class FakeImap:
    def __init__(self, uids: list[int], failing: set[int] | None = None, uid_validity: int = 42) -> None:
        self.uids = uids
        self.failing = failing or set()
        self.uid_validity = uid_validity
        self.selected: list[str] = []
        self.searches: list[str] = []

    async def select(self, folder: str) -> Response:
        self.selected.append(folder)
        return Response(
            "OK",
            [
                f"{len(self.uids)} EXISTS".encode(),
                f"OK [UIDVALIDITY {self.uid_validity}] UIDs valid".encode(),
                b"[READ-WRITE] SELECT completed.",
            ],
        )

    async def uid_search(self, criteria: str) -> Response:
        self.searches.append(criteria)
        if criteria.startswith("HEADER"):
            return Response("OK", [b"12", b"SEARCH completed."])
        start = int(criteria.split()[1].split(":")[0])
        matches = [uid for uid in self.uids if uid >= start] or self.uids[-1:]
        return Response("OK", [" ".join(str(uid) for uid in matches).encode(), b"SEARCH completed."])

    async def uid(self, command: str, uid: str, *args: str) -> Response:
        if int(uid) in self.failing:
            return Response("NO", [b"FETCH failed"])
        raw = rfc822(int(uid))
        return Response(
            "OK",
            [
                f"1 FETCH (UID {uid} FLAGS (\\Seen \\Flagged) BODY[] {{{len(raw)}}}".encode(),
                bytearray(raw),
                b")",
                b"FETCH completed.",
            ],
        )


class FakeConnectionManager:
    def __init__(self, imap: FakeImap) -> None:
        self.imap = imap

    @asynccontextmanager
    async def connection(self, account: EmailAccount, folder: str | None = None) -> AsyncGenerator[FakeImap, None]:
        if folder:
            await self.imap.select(folder)
        yield self.imap


def adapter_for(imap: FakeImap) -> ImapSmtpAdapter:
    return ImapSmtpAdapter(FakeConnectionManager(imap), smtp_controller=None)  # type: ignore[arg-type]


@pytest.fixture
def account() -> EmailAccount:
    return make_account(id=7)


async def test_fetches_uids_above_cursor_in_order(account: EmailAccount) -> None:
    imap = FakeImap([99, 100, 101, 102, 103])

    result = await adapter_for(imap).fetch(account, Cursor("42:100"), max_batch=50)

    assert imap.selected == ["INBOX"]
    assert imap.searches == ["UID 101:*"]
    assert [raw.external_id for raw in result.messages] == ["INBOX:42:101", "INBOX:42:102", "INBOX:42:103"]
    assert result.cursor == Cursor("42:103")
    first = result.messages[0]
    assert first.from_email == "alice@partner.com"
    assert first.rfc_message_id == "<101@partner.com>"
    assert first.text_body == "Body of message 101"
    assert first.is_read and first.is_starred
    assert first.position == Cursor("42:101")


async def test_highest_uid_echo_is_not_new(account: EmailAccount) -> None:
    imap = FakeImap([101, 102, 103])

    result = await adapter_for(imap).fetch(account, Cursor("42:103"), max_batch=50)

    assert result.messages == []
    assert result.cursor == Cursor("42:103")


async def test_batch_is_capped(account: EmailAccount) -> None:
    imap = FakeImap(list(range(1, 11)))

    result = await adapter_for(imap).fetch(account, Cursor(), max_batch=4)

    assert [raw.position for raw in result.messages] == [Cursor(f"42:{uid}") for uid in (1, 2, 3, 4)]
    assert result.cursor == Cursor("42:4")


async def test_unfetchable_message_is_skipped(account: EmailAccount) -> None:
    imap = FakeImap([101, 102, 103], failing={102})

    result = await adapter_for(imap).fetch(account, Cursor("42:100"), max_batch=50)

    assert [raw.external_id for raw in result.messages] == ["INBOX:42:101", "INBOX:42:103"]
    assert [item.external_id for item in result.skipped] == ["INBOX:42:102"]
    assert result.skipped[0].position == Cursor("42:102")
    assert result.cursor == Cursor("42:103")


async def test_failed_search_is_permanent(account: EmailAccount) -> None:
    imap = FakeImap([])

    async def failing_search(criteria: str) -> Response:
        return Response("BAD", [b"Invalid mailbox"])

    imap.uid_search = failing_search  # type: ignore[method-assign]

    with pytest.raises(PermanentProtocolError):
        await adapter_for(imap).fetch(account, Cursor("1"), max_batch=50)


async def test_find_sent_searches_sent_folder(account: EmailAccount) -> None:
    imap = FakeImap([])
    adapter = adapter_for(imap)

    found = await adapter.find_sent(account, "<abc@example.com>")

    assert found == "Sent:42:12"
    assert imap.selected == ["Sent"]
    assert imap.searches == ['HEADER Message-ID "<abc@example.com>"']


async def test_plain_uid_cursor_is_upgraded(account: EmailAccount) -> None:
    imap = FakeImap([101, 102])

    result = await adapter_for(imap).fetch(account, Cursor("101"), max_batch=50)

    assert imap.searches == ["UID 102:*"]
    assert [raw.external_id for raw in result.messages] == ["INBOX:42:102"]
    assert result.cursor == Cursor("42:102")


async def test_uidvalidity_change_restarts_from_first_uid(account: EmailAccount) -> None:
    imap = FakeImap([1, 2, 3], uid_validity=77)

    result = await adapter_for(imap).fetch(account, Cursor("42:250"), max_batch=50)

    assert imap.searches == ["UID 1:*"]
    assert [raw.external_id for raw in result.messages] == ["INBOX:77:1", "INBOX:77:2", "INBOX:77:3"]
    assert result.cursor == Cursor("77:3")


async def test_unselectable_folder_is_permanent(account: EmailAccount) -> None:
    imap = FakeImap([1])

    async def refuse(folder: str) -> Response:
        return Response("NO", [b"Mailbox does not exist"])

    imap.select = refuse  # type: ignore[method-assign]

    with pytest.raises(PermanentProtocolError):
        await adapter_for(imap).fetch(account, Cursor(), max_batch=50)


@pytest.mark.parametrize(
    "value, uid, uid_validity",
    [(None, 0, None), ("", 0, None), ("103", 103, None), ("42:103", 103, "42"), ("42:junk", 0, "42")],
)
def test_cursor_uid_parts(value: str | None, uid: int, uid_validity: str | None) -> None:
    cursor = Cursor(value)

    assert cursor.as_uid() == uid
    assert cursor.uid_validity == uid_validity
