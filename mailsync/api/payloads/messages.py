"""
Pydantic models for sending, deliverability and rate-limit endpoints.
"""

import base64
import binascii
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from mailsync.controllers.adapters.base import AttachmentInfo
from mailsync.controllers.email.message import DeliverabilityReport
from mailsync.controllers.outbound.dispatcher import DispatchResult, OutgoingMessage
from mailsync.controllers.outbound.rate_limiter import WindowUsage
from mailsync.controllers.outbound.spam_scorer import RecipientCheck, SpamScoreResult
from mailsync.models.rate_limit import RateWindowKind


class AttachmentData(BaseModel):
    file_name: str = Field(..., max_length=255)
    mime_type: str = "application/octet-stream"
    content: str = Field(..., description="Base64 encoded file content")

    @field_validator("content")
    @classmethod
    def validate_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("content must be base64 encoded")
        return value

    def to_attachment(self) -> AttachmentInfo:
        content = base64.b64decode(self.content)
        return AttachmentInfo(file_name=self.file_name, mime_type=self.mime_type, size=len(content), content=content)


class SendMessageRequest(BaseModel):
    to: list[EmailStr] = Field(..., min_length=1)
    cc: list[EmailStr] = Field(default_factory=list)
    bcc: list[EmailStr] = Field(default_factory=list)
    subject: str = Field(..., min_length=1, max_length=998)
    text_body: str = Field(..., description="Plain text version; required for deliverability")
    html_body: str | None = None
    attachments: list[AttachmentData] = Field(default_factory=list)
    reply_to_message_id: UUID | None = None
    override_spam_check: bool = Field(False, description="Send even if the spam score is at or above the hard ceiling")
    timeout_seconds: float | None = Field(None, gt=0, le=300)

    def to_outgoing(self) -> OutgoingMessage:
        return OutgoingMessage(
            to=[str(address) for address in self.to],
            cc=[str(address) for address in self.cc],
            bcc=[str(address) for address in self.bcc],
            subject=self.subject,
            text_body=self.text_body,
            html_body=self.html_body,
            attachments=[attachment.to_attachment() for attachment in self.attachments],
            override_spam_check=self.override_spam_check,
        )


class SpamCheckData(BaseModel):
    score: float
    band: str
    issues: list[str]
    recommendations: list[str]
    is_safe: bool
    requires_confirmation: bool
    is_blocked: bool

    @classmethod
    def from_result(cls, result: SpamScoreResult) -> "SpamCheckData":
        return cls(**result.to_dict())


class WindowUsageData(BaseModel):
    count: int
    limit: int
    remaining: int
    resets_at: datetime | None = None

    @classmethod
    def from_usage(cls, usage: WindowUsage) -> "WindowUsageData":
        return cls(count=usage.count, limit=usage.limit, remaining=usage.remaining, resets_at=usage.resets_at)


class RateLimitsData(BaseModel):
    hourly: WindowUsageData
    daily: WindowUsageData

    @classmethod
    def from_usage(cls, usage: dict[RateWindowKind, WindowUsage]) -> "RateLimitsData":
        return cls(
            hourly=WindowUsageData.from_usage(usage[RateWindowKind.hourly]),
            daily=WindowUsageData.from_usage(usage[RateWindowKind.daily]),
        )


class RateLimitsResponse(BaseModel):
    request_id: str
    data: RateLimitsData


class SentMessageData(BaseModel):
    id: UUID
    thread_id: UUID
    rfc_message_id: str | None
    external_message_id: str | None
    sent_at: datetime | None
    needs_reconciliation: bool


class SendMessageResponse(BaseModel):
    request_id: str
    data: SentMessageData
    spam: SpamCheckData
    rate_limits: RateLimitsData

    @classmethod
    def from_result(cls, request_id: str, result: DispatchResult) -> "SendMessageResponse":
        message = result.message
        return cls(
            request_id=request_id,
            data=SentMessageData(
                id=message.uuid,
                thread_id=result.thread.uuid,
                rfc_message_id=message.rfc_message_id,
                external_message_id=message.external_message_id,
                sent_at=message.sent_at,
                needs_reconciliation=message.needs_reconciliation,
            ),
            spam=SpamCheckData.from_result(result.spam),
            rate_limits=RateLimitsData.from_usage(result.rate_limits.usage),
        )


class DeliverabilityCheckRequest(BaseModel):
    from_email: EmailStr
    subject: str | None = None
    html_body: str | None = None
    text_body: str | None = None
    recipients: list[str] = Field(default_factory=list, max_length=100)


class RecipientCheckData(BaseModel):
    email: str
    is_valid: bool
    reason: str | None = None
    suggestions: list[str] = Field(default_factory=list)

    @classmethod
    def from_check(cls, check: RecipientCheck) -> "RecipientCheckData":
        return cls(email=check.email, is_valid=check.is_valid, reason=check.reason, suggestions=check.suggestions)


class DeliverabilityData(BaseModel):
    spam: SpamCheckData
    recipients: list[RecipientCheckData]


class DeliverabilityResponse(BaseModel):
    request_id: str
    data: DeliverabilityData

    @classmethod
    def from_report(cls, request_id: str, report: DeliverabilityReport) -> "DeliverabilityResponse":
        return cls(
            request_id=request_id,
            data=DeliverabilityData(
                spam=SpamCheckData.from_result(report.spam),
                recipients=[RecipientCheckData.from_check(check) for check in report.recipients],
            ),
        )
