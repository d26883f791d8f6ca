"""
Pydantic models for account endpoints.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from mailsync.controllers.account.account_controller import AccountLink, AccountOverview
from mailsync.controllers.sync.syncer import SyncReport
from mailsync.models.account import EmailAccount, ProviderKind
from mailsync.models.sync_health import SyncHealth


class LinkAccountRequest(BaseModel):
    """Link a mailbox. OAuth2 providers need a code or refresh token; smtp needs server settings."""

    provider: ProviderKind = Field(..., description="gmail, outlook or smtp")
    email_address: EmailStr
    account_name: str | None = Field(None, max_length=255)

    authorization_code: str | None = None
    redirect_uri: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = Field(None, ge=0)

    imap_host: str | None = None
    imap_port: int | None = Field(None, ge=1, le=65535)
    imap_secure: bool = True
    smtp_host: str | None = None
    smtp_port: int | None = Field(None, ge=1, le=65535)
    smtp_secure: bool = True
    username: str | None = None
    password: str | None = None

    is_default: bool = False
    sync_enabled: bool = True
    sync_frequency_seconds: int | None = Field(None, ge=10)
    inbox_folder: str | None = None
    sent_folder: str | None = None
    drafts_folder: str | None = None
    trash_folder: str | None = None

    def to_link(self) -> AccountLink:
        return AccountLink(**self.model_dump(exclude={"provider"}))


class AccountData(BaseModel):
    id: UUID
    email_address: str
    account_name: str
    provider: ProviderKind
    is_default: bool
    is_active: bool
    sync_enabled: bool
    sync_frequency_seconds: int
    last_sync_at: datetime | None = None
    created_at: datetime | None = None

    consecutive_sync_failures: int = 0
    sync_flagged: bool = Field(
        False, description="Sync has failed repeatedly; the user should re-link or check settings"
    )
    last_sync_error: str | None = None
    last_failed_sync_at: datetime | None = None

    @classmethod
    def from_model(cls, account: EmailAccount, health: SyncHealth | None = None) -> "AccountData":
        data = cls(
            id=account.uuid,
            email_address=account.email_address,
            account_name=account.account_name,
            provider=account.provider,
            is_default=account.is_default,
            is_active=account.is_active,
            sync_enabled=account.sync_enabled,
            sync_frequency_seconds=account.sync_frequency_seconds,
            last_sync_at=account.last_sync_at,
            created_at=account.created_at,
        )
        if health is not None:
            data.consecutive_sync_failures = health.consecutive_failures
            data.sync_flagged = health.is_flagged
            data.last_sync_error = health.last_error
            data.last_failed_sync_at = health.last_failure_at
        return data

    @classmethod
    def from_overview(cls, overview: AccountOverview) -> "AccountData":
        return cls.from_model(overview.account, overview.health)


class AccountResponse(BaseModel):
    request_id: str
    data: AccountData


class AccountListResponse(BaseModel):
    request_id: str
    data: list[AccountData]


class DeleteAccountResponse(BaseModel):
    request_id: str
    success: bool = True


class SyncReportData(BaseModel):
    fetched: int
    stored: int
    duplicates: int
    confirmed: int
    skipped: int
    reconciled: int
    dropped: int

    @classmethod
    def from_report(cls, report: SyncReport) -> "SyncReportData":
        return cls(
            fetched=report.fetched,
            stored=report.stored,
            duplicates=report.duplicates,
            confirmed=report.confirmed,
            skipped=report.skipped,
            reconciled=report.reconciled,
            dropped=report.dropped,
        )


class SyncResponse(BaseModel):
    request_id: str
    already_running: bool = Field(False, description="A sync for this account was in progress; nothing was started")
    data: SyncReportData | None = None
