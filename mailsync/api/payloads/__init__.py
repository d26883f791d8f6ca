"""
API models package for Pydantic request/response models.
"""

from .accounts import (
    AccountData,
    AccountListResponse,
    AccountResponse,
    DeleteAccountResponse,
    LinkAccountRequest,
    SyncReportData,
    SyncResponse,
)
from .error import APIError
from .messages import (
    AttachmentData,
    DeliverabilityCheckRequest,
    DeliverabilityResponse,
    RateLimitsData,
    RateLimitsResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from .threads import ThreadData, ThreadListResponse

__all__ = [
    "APIError",
    "AccountData",
    "AccountListResponse",
    "AccountResponse",
    "AttachmentData",
    "DeleteAccountResponse",
    "DeliverabilityCheckRequest",
    "DeliverabilityResponse",
    "LinkAccountRequest",
    "RateLimitsData",
    "RateLimitsResponse",
    "SendMessageRequest",
    "SendMessageResponse",
    "SyncReportData",
    "SyncResponse",
    "ThreadData",
    "ThreadListResponse",
]
