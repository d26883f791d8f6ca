import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Any

from mailsync.controllers.adapters.base import (
    Cursor,
    FetchResult,
    OutboundDraft,
    ProtocolAdapter,
    RawMessage,
    SkippedMessage,
)
from mailsync.controllers.adapters.circuit_breaker import CircuitBreakerRegistry
from mailsync.controllers.adapters.http_client import ProviderHttpClient
from mailsync.controllers.adapters.mime import build_message, parse_message
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.exceptions import PermanentProtocolError
from mailsync.models.account import EmailAccount, ProviderKind
from settings import settings

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
HISTORY_PAGE_SIZE = 500


class GmailAdapter(ProtocolAdapter):
    """Gmail REST API.

    Incremental fetch walks users.history from the stored historyId. When the
    history id is too old (HTTP 404) or missing, falls back to listing the
    most recent messages and restarts from the mailbox's current historyId.
    """

    provider = ProviderKind.gmail

    def __init__(self, credential_store: CredentialStore, breakers: CircuitBreakerRegistry) -> None:
        self._logger = logging.getLogger(__name__)
        self._credentials = credential_store
        self._http = ProviderHttpClient(GMAIL_API_BASE, breakers, timeout=settings.oauth.http_timeout)

    async def _token(self, account: EmailAccount) -> str:
        return (await self._credentials.get_valid_token(account)).token

    async def fetch(self, account: EmailAccount, cursor: Cursor, max_batch: int) -> FetchResult:
        token = await self._token(account)
        if cursor.is_empty:
            return await self._full_fetch(account, token, max_batch)

        try:
            message_ids, new_cursor = await self._history_message_ids(token, cursor, max_batch)
        except PermanentProtocolError as e:
            if e.details.get("status") != 404:
                raise
            self._logger.warning(f"History id {cursor.value} expired for account {account.id}, doing a full sync")
            return await self._full_fetch(account, token, max_batch)

        return await self._fetch_messages(account, token, message_ids, new_cursor)

    async def send(self, account: EmailAccount, draft: OutboundDraft) -> str:
        token = await self._token(account)
        raw = base64.urlsafe_b64encode(build_message(draft).as_bytes()).decode()
        data = await self._http.request("POST", "messages/send", token, json={"raw": raw})
        message_id = data.get("id")
        if not message_id:
            raise PermanentProtocolError("Gmail send response has no message id")
        return str(message_id)

    async def verify(self, account: EmailAccount) -> str:
        profile = await self._http.request("GET", "profile", await self._token(account))
        return str(profile.get("emailAddress") or account.email_address).lower()

    async def find_sent(self, account: EmailAccount, rfc_message_id: str) -> str | None:
        token = await self._token(account)
        data = await self._http.request("GET", "messages", token, params={"q": f"rfc822msgid:{rfc_message_id}"})
        messages = data.get("messages") or []
        return str(messages[0]["id"]) if messages else None

    async def close(self) -> None:
        await self._http.close_session()

    async def _history_message_ids(self, token: str, cursor: Cursor, max_batch: int) -> tuple[list[str], Cursor]:
        """Message ids added since the cursor, and the cursor that covers exactly those ids."""
        message_ids: list[str] = []
        seen: set[str] = set()
        latest_history_id = cursor.value
        page_token: str | None = None

        while True:
            params: dict[str, Any] = {
                "startHistoryId": cursor.value,
                "historyTypes": "messageAdded",
                "maxResults": HISTORY_PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._http.request("GET", "history", token, params=params)

            for record in data.get("history", []):
                for added in record.get("messagesAdded", []):
                    message = added.get("message", {})
                    message_id = message.get("id")
                    if not message_id or message_id in seen or "DRAFT" in message.get("labelIds", []):
                        continue
                    seen.add(message_id)
                    message_ids.append(message_id)
                if len(message_ids) >= max_batch:
                    # Resume after this record next time.
                    return message_ids, Cursor(str(record["id"]))

            latest_history_id = data.get("historyId", latest_history_id)
            page_token = data.get("nextPageToken")
            if not page_token:
                return message_ids, Cursor(str(latest_history_id))

    async def _full_fetch(self, account: EmailAccount, token: str, max_batch: int) -> FetchResult:
        # Read the history id first so nothing arriving during the listing is lost.
        profile = await self._http.request("GET", "profile", token)
        history_id = profile.get("historyId")
        if not history_id:
            raise PermanentProtocolError("Gmail profile response has no historyId")

        data = await self._http.request("GET", "messages", token, params={"maxResults": max_batch, "q": "-in:drafts"})
        # Listed newest first.
        message_ids = [item["id"] for item in reversed(data.get("messages") or [])]
        return await self._fetch_messages(account, token, message_ids, Cursor(str(history_id)))

    async def _fetch_messages(
        self, account: EmailAccount, token: str, message_ids: list[str], cursor: Cursor
    ) -> FetchResult:
        messages: list[RawMessage] = []
        skipped: list[SkippedMessage] = []
        for message_id in message_ids:
            try:
                data = await self._http.request("GET", f"messages/{message_id}", token, params={"format": "raw"})
                messages.append(self._to_raw_message(account, data))
            except PermanentProtocolError as e:
                self._logger.warning(f"Skipping Gmail message {message_id} for account {account.id}: {e.message}")
                skipped.append(SkippedMessage(message_id, e.message))
        return FetchResult(messages=messages, cursor=cursor, skipped=skipped)

    def _to_raw_message(self, account: EmailAccount, data: dict[str, Any]) -> RawMessage:
        try:
            encoded = data["raw"]
            raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        except (KeyError, TypeError, binascii.Error) as e:
            raise PermanentProtocolError(f"Gmail message has no usable raw payload: {e}")

        parsed = parse_message(raw)
        labels = set(data.get("labelIds") or [])
        is_outgoing = "SENT" in labels
        sent_at = parsed.sent_at
        if sent_at is None and data.get("internalDate"):
            sent_at = datetime.fromtimestamp(int(data["internalDate"]) / 1000, tz=timezone.utc)

        return RawMessage(
            external_id=str(data["id"]),
            provider_thread_id=data.get("threadId"),
            subject=parsed.subject,
            from_email=parsed.from_email,
            to_emails=parsed.to_emails,
            cc_emails=parsed.cc_emails,
            bcc_emails=parsed.bcc_emails,
            html_body=parsed.html_body,
            text_body=parsed.text_body,
            sent_at=sent_at,
            folder=account.sent_folder if is_outgoing else account.inbox_folder,
            rfc_message_id=parsed.rfc_message_id,
            is_read="UNREAD" not in labels,
            is_starred="STARRED" in labels,
            is_important="IMPORTANT" in labels,
            is_outgoing=is_outgoing,
            attachments=parsed.attachments,
        )
