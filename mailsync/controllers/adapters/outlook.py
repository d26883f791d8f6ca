import base64
import logging
from datetime import datetime
from typing import Any

from mailsync.controllers.adapters.base import (
    AttachmentInfo,
    Cursor,
    FetchResult,
    OutboundDraft,
    ProtocolAdapter,
    RawMessage,
    SkippedMessage,
)
from mailsync.controllers.adapters.circuit_breaker import CircuitBreakerRegistry
from mailsync.controllers.adapters.http_client import ProviderHttpClient
from mailsync.controllers.adapters.mime import generate_message_id, normalize_address
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.exceptions import PermanentProtocolError
from mailsync.models.account import EmailAccount, ProviderKind
from settings import settings

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
MESSAGE_FIELDS = (
    "id,conversationId,internetMessageId,subject,from,toRecipients,ccRecipients,bccRecipients,"
    "body,receivedDateTime,sentDateTime,isRead,flag,importance,hasAttachments"
)
# Ids survive moving the message between folders (drafts -> sent items).
IMMUTABLE_ID = 'IdType="ImmutableId"'


def _addresses(recipients: list[dict[str, Any]] | None) -> list[str]:
    result = []
    for recipient in recipients or []:
        address = normalize_address((recipient.get("emailAddress") or {}).get("address") or "")
        if address:
            result.append(address)
    return result


def _recipients(addresses: list[str]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": address}} for address in addresses]


def _parse_graph_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class OutlookAdapter(ProtocolAdapter):
    """Microsoft Graph mailbox.

    Fetch pages through the inbox delta query. The cursor is the Graph link to
    continue from: a nextLink while a round is in progress, the deltaLink once
    it is complete. An expired delta link (HTTP 410) starts a new round.
    """

    provider = ProviderKind.outlook

    def __init__(self, credential_store: CredentialStore, breakers: CircuitBreakerRegistry) -> None:
        self._logger = logging.getLogger(__name__)
        self._credentials = credential_store
        self._http = ProviderHttpClient(GRAPH_API_BASE, breakers, timeout=settings.oauth.http_timeout)

    async def _token(self, account: EmailAccount) -> str:
        return (await self._credentials.get_valid_token(account)).token

    async def fetch(self, account: EmailAccount, cursor: Cursor, max_batch: int) -> FetchResult:
        token = await self._token(account)
        headers = {"Prefer": f"odata.maxpagesize={max_batch}, {IMMUTABLE_ID}"}
        if cursor.is_empty:
            data = await self._start_delta(token, headers)
        else:
            try:
                data = await self._http.request("GET", str(cursor.value), token, headers=headers)
            except PermanentProtocolError as e:
                if e.details.get("status") != 410:
                    raise
                self._logger.warning(f"Delta link expired for account {account.id}, starting a new delta round")
                data = await self._start_delta(token, headers)

        next_link = data.get("@odata.nextLink") or data.get("@odata.deltaLink")
        if not next_link:
            raise PermanentProtocolError("Graph delta response has neither nextLink nor deltaLink")

        entries = [entry for entry in data.get("value", []) if "@removed" not in entry]
        entries.sort(key=lambda entry: entry.get("receivedDateTime") or "")

        messages: list[RawMessage] = []
        skipped: list[SkippedMessage] = []
        for entry in entries:
            message_id = str(entry.get("id", ""))
            try:
                messages.append(await self._to_raw_message(account, token, entry))
            except PermanentProtocolError as e:
                self._logger.warning(f"Skipping Graph message {message_id} for account {account.id}: {e.message}")
                skipped.append(SkippedMessage(message_id, e.message))

        return FetchResult(messages=messages, cursor=Cursor(next_link), skipped=skipped)

    async def send(self, account: EmailAccount, draft: OutboundDraft) -> str:
        token = await self._token(account)
        headers = {"Prefer": IMMUTABLE_ID}
        payload = self._draft_payload(account, draft)
        created = await self._http.request("POST", "me/messages", token, json=payload, headers=headers)
        message_id = created.get("id")
        if not message_id:
            raise PermanentProtocolError("Graph draft response has no message id")

        await self._http.request("POST", f"me/messages/{message_id}/send", token, headers=headers)
        return str(message_id)

    async def verify(self, account: EmailAccount) -> str:
        profile = await self._http.request("GET", "me", await self._token(account))
        address = profile.get("mail") or profile.get("userPrincipalName") or account.email_address
        return str(address).lower()

    async def find_sent(self, account: EmailAccount, rfc_message_id: str) -> str | None:
        token = await self._token(account)
        escaped = rfc_message_id.replace("'", "''")
        data = await self._http.request(
            "GET",
            "me/mailFolders/sentitems/messages",
            token,
            params={"$filter": f"internetMessageId eq '{escaped}'", "$select": "id"},
            headers={"Prefer": IMMUTABLE_ID},
        )
        found = data.get("value") or []
        return str(found[0]["id"]) if found else None

    async def close(self) -> None:
        await self._http.close_session()

    async def _start_delta(self, token: str, headers: dict[str, str]) -> dict[str, Any]:
        return await self._http.request(
            "GET", "me/mailFolders/inbox/messages/delta", token, params={"$select": MESSAGE_FIELDS}, headers=headers
        )

    def _draft_payload(self, account: EmailAccount, draft: OutboundDraft) -> dict[str, Any]:
        if draft.html_body:
            body = {"contentType": "HTML", "content": draft.html_body}
        else:
            body = {"contentType": "Text", "content": draft.text_body}

        payload: dict[str, Any] = {
            "subject": draft.subject,
            "body": body,
            "toRecipients": _recipients(draft.to),
            "ccRecipients": _recipients(draft.cc),
            "bccRecipients": _recipients(draft.bcc),
            "internetMessageId": draft.rfc_message_id or generate_message_id(account.domain),
        }
        if draft.attachments:
            payload["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": attachment.file_name,
                    "contentType": attachment.mime_type,
                    "contentBytes": base64.b64encode(attachment.content or b"").decode(),
                }
                for attachment in draft.attachments
            ]
        return payload

    async def _to_raw_message(self, account: EmailAccount, token: str, entry: dict[str, Any]) -> RawMessage:
        if not entry.get("id"):
            raise PermanentProtocolError("Graph message has no id")

        sender = normalize_address(((entry.get("from") or {}).get("emailAddress") or {}).get("address") or "")
        if not sender:
            raise PermanentProtocolError(f"Graph message {entry['id']} has no sender")

        body = entry.get("body") or {}
        content = body.get("content")
        is_html = str(body.get("contentType", "")).lower() == "html"
        attachments = await self._attachments(token, entry["id"]) if entry.get("hasAttachments") else []

        return RawMessage(
            external_id=str(entry["id"]),
            provider_thread_id=entry.get("conversationId"),
            rfc_message_id=entry.get("internetMessageId"),
            subject=entry.get("subject") or "",
            from_email=sender,
            to_emails=_addresses(entry.get("toRecipients")),
            cc_emails=_addresses(entry.get("ccRecipients")),
            bcc_emails=_addresses(entry.get("bccRecipients")),
            html_body=content if is_html else None,
            text_body=None if is_html else content,
            sent_at=_parse_graph_datetime(entry.get("sentDateTime") or entry.get("receivedDateTime")),
            folder=account.inbox_folder,
            is_read=bool(entry.get("isRead")),
            is_starred=(entry.get("flag") or {}).get("flagStatus") == "flagged",
            is_important=entry.get("importance") == "high",
            is_outgoing=sender == account.email_address.lower(),
            attachments=attachments,
        )

    async def _attachments(self, token: str, message_id: str) -> list[AttachmentInfo]:
        data = await self._http.request(
            "GET", f"me/messages/{message_id}/attachments", token, params={"$select": "id,name,contentType,size"}
        )
        return [
            AttachmentInfo(
                file_name=item.get("name") or "attachment",
                mime_type=item.get("contentType") or "application/octet-stream",
                size=int(item.get("size") or 0),
                external_id=item.get("id"),
            )
            for item in data.get("value", [])
        ]
