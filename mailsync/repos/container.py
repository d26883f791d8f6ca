from dependency_injector import containers, providers

from mailsync.repos.account import AccountRepo
from mailsync.repos.message import MessageRepo
from mailsync.repos.rate_limit import RateLimitWindowRepo
from mailsync.repos.sync_health import SyncHealthRepo
from mailsync.repos.thread import ThreadRepo


class RepoContainer(containers.DeclarativeContainer):
    account = providers.Singleton(AccountRepo)
    message = providers.Singleton(MessageRepo)
    rate_limit = providers.Singleton(RateLimitWindowRepo)
    sync_health = providers.Singleton(SyncHealthRepo)
    thread = providers.Singleton(ThreadRepo)
