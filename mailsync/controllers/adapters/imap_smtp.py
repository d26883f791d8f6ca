import logging
import re

from aioimaplib import IMAP4, Response

from mailsync.controllers.adapters.base import (
    Cursor,
    FetchResult,
    OutboundDraft,
    ProtocolAdapter,
    RawMessage,
    SkippedMessage,
)
from mailsync.controllers.adapters.mime import build_message, parse_message
from mailsync.controllers.imap.connection import ConnectionManager
from mailsync.controllers.smtp.smtp_controller import SMTPController
from mailsync.exceptions import PermanentProtocolError, ProtocolError
from mailsync.models.account import EmailAccount, ProviderKind

FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
UIDVALIDITY_RE = re.compile(rb"\[UIDVALIDITY (\d+)\]")


class ImapSmtpAdapter(ProtocolAdapter):
    """Generic mailbox: UID-based IMAP fetch from the inbox, SMTP for sending.

    Cursor is "<uidvalidity>:<uid>" of the highest inbox UID processed. A
    changed UIDVALIDITY invalidates every stored UID, so the folder is read
    again from the start.
    """

    provider = ProviderKind.smtp

    def __init__(self, connection_manager: ConnectionManager, smtp_controller: SMTPController) -> None:
        self._logger = logging.getLogger(__name__)
        self._connections = connection_manager
        self._smtp = smtp_controller

    async def fetch(self, account: EmailAccount, cursor: Cursor, max_batch: int) -> FetchResult:
        last_uid = cursor.as_uid()
        folder = account.inbox_folder
        messages: list[RawMessage] = []
        skipped: list[SkippedMessage] = []

        async with self._connections.connection(account) as connection:
            uid_validity = await self._select(connection, folder)
            if cursor.uid_validity and cursor.uid_validity != uid_validity:
                # UIDs from before the reset point at different messages now.
                self._logger.warning(
                    f"UIDVALIDITY of {folder} changed from {cursor.uid_validity} to {uid_validity} "
                    f"for account {account.id}, resyncing the folder"
                )
                last_uid = 0

            search = await connection.uid_search(f"UID {last_uid + 1}:*")
            if search.result != "OK":
                raise PermanentProtocolError(f"UID SEARCH failed on {folder}: {search.result}")

            # "n:*" always matches the highest UID, even when it is below n.
            new_uids = sorted(uid for uid in self._parse_search_response(search) if uid > last_uid)[:max_batch]
            if new_uids:
                self._logger.info(f"Found {len(new_uids)} new messages for account {account.id}:{folder}")

            for uid in new_uids:
                try:
                    messages.append(await self._fetch_one(connection, folder, uid_validity, uid))
                except PermanentProtocolError as e:
                    self._logger.warning(f"Skipping UID {uid} for account {account.id}:{folder}: {e.message}")
                    skipped.append(
                        SkippedMessage(
                            self._message_key(folder, uid_validity, uid), e.message, Cursor.for_uid(uid_validity, uid)
                        )
                    )

        new_cursor = Cursor.for_uid(uid_validity, new_uids[-1] if new_uids else last_uid)
        return FetchResult(messages=messages, cursor=new_cursor, skipped=skipped)

    async def send(self, account: EmailAccount, draft: OutboundDraft) -> str:
        message = build_message(draft)
        await self._smtp.send_message(account, message, draft.recipients)
        await self._save_to_sent_folder(account, message.as_bytes())
        return str(message["Message-ID"])

    async def verify(self, account: EmailAccount) -> str:
        async with self._connections.connection(account, account.inbox_folder):
            pass
        await self._smtp.verify_login(account)
        return account.email_address

    async def find_sent(self, account: EmailAccount, rfc_message_id: str) -> str | None:
        folder = account.sent_folder
        async with self._connections.connection(account) as connection:
            uid_validity = await self._select(connection, folder)
            search = await connection.uid_search(f'HEADER Message-ID "{rfc_message_id}"')
            if search.result != "OK":
                return None
            uids = self._parse_search_response(search)
        return self._message_key(folder, uid_validity, uids[-1]) if uids else None

    async def _select(self, connection: IMAP4, folder: str) -> str | None:
        """Select a folder and return its UIDVALIDITY, if the server reports one."""
        response = await connection.select(folder)
        if response.result != "OK":
            raise PermanentProtocolError(f"Folder {folder} cannot be selected: {response.result}")
        for line in response.lines:
            text = bytes(line) if isinstance(line, (bytes, bytearray)) else str(line).encode()
            match = UIDVALIDITY_RE.search(text)
            if match:
                return match.group(1).decode()
        return None

    @staticmethod
    def _message_key(folder: str, uid_validity: str | None, uid: int) -> str:
        return f"{folder}:{uid_validity}:{uid}" if uid_validity else f"{folder}:{uid}"

    async def _fetch_one(self, connection: IMAP4, folder: str, uid_validity: str | None, uid: int) -> RawMessage:
        response = await connection.uid("fetch", str(uid), "(UID FLAGS BODY.PEEK[])")
        if response.result != "OK":
            raise PermanentProtocolError(f"UID FETCH {uid} returned {response.result}")

        raw, flags = self._parse_fetch_response(response)
        if raw is None:
            raise PermanentProtocolError(f"UID FETCH {uid} returned no message body")

        parsed = parse_message(raw)
        return RawMessage(
            external_id=self._message_key(folder, uid_validity, uid),
            subject=parsed.subject,
            from_email=parsed.from_email,
            to_emails=parsed.to_emails,
            cc_emails=parsed.cc_emails,
            bcc_emails=parsed.bcc_emails,
            html_body=parsed.html_body,
            text_body=parsed.text_body,
            sent_at=parsed.sent_at,
            folder=folder,
            rfc_message_id=parsed.rfc_message_id,
            is_read="\\Seen" in flags,
            is_starred="\\Flagged" in flags,
            attachments=parsed.attachments,
            position=Cursor.for_uid(uid_validity, uid),
        )

    async def _save_to_sent_folder(self, account: EmailAccount, message: bytes) -> None:
        """Keep a copy in the Sent folder. Not all servers do this for SMTP submissions."""
        # IMAP APPEND needs CRLF line endings.
        payload = message.replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")
        try:
            async with self._connections.connection(account) as connection:
                await connection.append(payload, account.sent_folder, flags="\\Seen")
        except ProtocolError as e:
            self._logger.warning(f"Failed to save sent message to {account.sent_folder} for account {account.id}: {e}")

    def _parse_search_response(self, response: Response) -> list[int]:
        uids: list[int] = []
        for line in response.lines:
            text = line.decode("utf-8", errors="ignore") if isinstance(line, (bytes, bytearray)) else str(line)
            if "completed" in text.lower() or text.startswith("OK"):
                continue
            uids.extend(int(part) for part in text.split() if part.isdigit())
        return uids

    def _parse_fetch_response(self, response: Response) -> tuple[bytes | None, set[str]]:
        """Extract the message literal and the flags from a single-message UID FETCH."""
        raw: bytes | None = None
        flags: set[str] = set()
        lines = response.lines
        i = 0
        while i < len(lines):
            line = bytes(lines[i])
            match = FLAGS_RE.search(line)
            if match:
                flags.update(flag.decode() for flag in match.group(1).split())
            # The header line, e.g. b"1 FETCH (UID 101 FLAGS (\\Seen) BODY[] {1437}", announces a literal.
            if raw is None and b"FETCH" in line and line.rstrip().endswith(b"}") and i + 1 < len(lines):
                raw = bytes(lines[i + 1])
                i += 2
                continue
            i += 1
        return raw, flags
