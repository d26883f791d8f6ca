from .account import EmailAccount, ProviderKind
from .base import Base
from .message import EmailAttachment, EmailMessage, MessageType
from .rate_limit import RateLimitWindow, RateWindowKind
from .sync_health import SyncHealth
from .thread import EmailThread

__all__ = [
    "Base",
    "EmailAccount",
    "EmailAttachment",
    "EmailMessage",
    "EmailThread",
    "MessageType",
    "ProviderKind",
    "RateLimitWindow",
    "RateWindowKind",
    "SyncHealth",
]
