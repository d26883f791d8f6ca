import email
import email.policy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import Message as PythonEmailMessage
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, getaddresses, parsedate_to_datetime

from mailsync.controllers.adapters.base import AttachmentInfo, OutboundDraft
from mailsync.exceptions import PermanentProtocolError

logger = logging.getLogger(__name__)


@dataclass
class ParsedMime:
    subject: str
    from_email: str
    to_emails: list[str]
    cc_emails: list[str]
    bcc_emails: list[str]
    sent_at: datetime | None
    rfc_message_id: str | None
    html_body: str | None
    text_body: str | None
    attachments: list[AttachmentInfo] = field(default_factory=list)


def generate_message_id(domain: str) -> str:
    return f"<{uuid.uuid4()}@{domain}>"


def normalize_address(address: str) -> str:
    return address.strip().lower()


def parse_addresses(header_value: str | None) -> list[str]:
    """Bare, lower-cased addresses from an address header."""
    if not header_value:
        return []
    return [normalize_address(addr) for _, addr in getaddresses([str(header_value)]) if addr]


def build_message(draft: OutboundDraft) -> MIMEMultipart:
    """Build the RFC 5322 message for a draft. Bcc is never written as a header."""
    body = MIMEMultipart("alternative")
    body.attach(MIMEText(draft.text_body, "plain", "utf-8"))
    if draft.html_body:
        body.attach(MIMEText(draft.html_body, "html", "utf-8"))

    if draft.attachments:
        message = MIMEMultipart("mixed")
        message.attach(body)
        for attachment in draft.attachments:
            part = MIMEApplication(attachment.content or b"", name=attachment.file_name)
            part.add_header("Content-Disposition", "attachment", filename=attachment.file_name)
            if attachment.mime_type:
                part.set_type(attachment.mime_type)
            message.attach(part)
    else:
        message = body

    message["Subject"] = draft.subject
    message["Date"] = formatdate(localtime=True)
    message["From"] = formataddr((draft.from_name or "", draft.from_email))
    message["To"] = ", ".join(draft.to)
    if draft.cc:
        message["Cc"] = ", ".join(draft.cc)
    message["Message-ID"] = draft.rfc_message_id or generate_message_id(draft.from_email.rsplit("@", 1)[-1])
    if draft.in_reply_to:
        message["In-Reply-To"] = draft.in_reply_to
    if draft.references:
        message["References"] = " ".join(draft.references)
    return message


def parse_message(raw: bytes) -> ParsedMime:
    """Parse raw RFC 5322 bytes. Raises PermanentProtocolError if the message is unusable."""
    try:
        msg = email.message_from_bytes(raw, policy=email.policy.default)
        subject = str(msg.get("Subject") or "").strip()
        from_addresses = parse_addresses(msg.get("From"))
        html_body, text_body = _extract_bodies(msg)
        return ParsedMime(
            subject=subject,
            from_email=from_addresses[0] if from_addresses else "",
            to_emails=parse_addresses(msg.get("To")),
            cc_emails=parse_addresses(msg.get("Cc")),
            bcc_emails=parse_addresses(msg.get("Bcc")),
            sent_at=_parse_date(msg.get("Date")),
            rfc_message_id=str(msg.get("Message-ID")).strip() if msg.get("Message-ID") else None,
            html_body=html_body,
            text_body=text_body,
            attachments=_extract_attachments(msg),
        )
    except (LookupError, ValueError, TypeError, IndexError) as e:
        raise PermanentProtocolError(f"Unparseable message: {e}")


def _parse_date(value: object) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        logger.debug(f"Ignoring invalid Date header: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decode_part(part: PythonEmailMessage) -> str:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return str(payload or "")
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset)
    except (UnicodeDecodeError, LookupError):
        return payload.decode("utf-8", errors="ignore")


def _extract_bodies(msg: PythonEmailMessage) -> tuple[str | None, str | None]:
    html_body: str | None = None
    text_body: str | None = None

    for part in msg.walk():
        if part.is_multipart():
            continue
        if "attachment" in str(part.get("Content-Disposition", "")):
            continue

        content_type = part.get_content_type()
        if content_type == "text/html" and html_body is None:
            html_body = _decode_part(part).strip()
        elif content_type == "text/plain" and text_body is None:
            text_body = _decode_part(part).strip()

    return html_body, text_body


def _extract_attachments(msg: PythonEmailMessage) -> list[AttachmentInfo]:
    attachments: list[AttachmentInfo] = []
    for part in msg.walk():
        if "attachment" not in str(part.get("Content-Disposition", "")):
            continue
        filename = part.get_filename()
        if not filename:
            continue
        payload = part.get_payload(decode=True)
        content = payload if isinstance(payload, bytes) else None
        attachments.append(
            AttachmentInfo(
                file_name=filename,
                mime_type=part.get_content_type(),
                size=len(content) if content else 0,
                content=content,
            )
        )
    return attachments
