from .account import AccountRepo
from .message import MessageRepo
from .rate_limit import RateLimitWindowRepo
from .sync_health import SyncHealthRepo
from .thread import ThreadFilters, ThreadRepo

__all__ = [
    "AccountRepo",
    "MessageRepo",
    "RateLimitWindowRepo",
    "SyncHealthRepo",
    "ThreadFilters",
    "ThreadRepo",
]
