from typing import cast

from dependency_injector import containers, providers

from mailsync.controllers.account.account_controller import AccountController
from mailsync.controllers.adapters.circuit_breaker import CircuitBreakerRegistry
from mailsync.controllers.adapters.gmail import GmailAdapter
from mailsync.controllers.adapters.imap_smtp import ImapSmtpAdapter
from mailsync.controllers.adapters.outlook import OutlookAdapter
from mailsync.controllers.adapters.registry import AdapterRegistry
from mailsync.controllers.credentials.credential_store import CredentialStore
from mailsync.controllers.credentials.oauth_client import OAuthTokenClient
from mailsync.controllers.email.email_controller import EmailController
from mailsync.controllers.imap.connection import ConnectionManager
from mailsync.controllers.outbound.dispatcher import Dispatcher
from mailsync.controllers.outbound.rate_limiter import RateLimiter
from mailsync.controllers.outbound.spam_scorer import SpamScorer
from mailsync.controllers.smtp.smtp_controller import SMTPController
from mailsync.controllers.sync.deduplicator import Deduplicator
from mailsync.controllers.sync.scheduler import SyncScheduler
from mailsync.controllers.sync.syncer import AccountSyncer
from mailsync.controllers.sync.thread_assembler import ThreadAssembler
from mailsync.controllers.sync.watcher import SyncWatcher
from mailsync.repos.container import RepoContainer


class ControllerContainer(containers.DeclarativeContainer):
    repos: RepoContainer = cast(RepoContainer, providers.DependenciesContainer())

    circuit_breakers = providers.Singleton(CircuitBreakerRegistry)
    oauth_client = providers.Singleton(OAuthTokenClient)
    credential_store = providers.Singleton(CredentialStore, account_repo=repos.account, oauth_client=oauth_client)

    imap_connection_manager = providers.Singleton(
        ConnectionManager, credential_store=credential_store, breakers=circuit_breakers
    )
    smtp_controller = providers.Singleton(SMTPController, credential_store=credential_store, breakers=circuit_breakers)

    gmail_adapter = providers.Singleton(GmailAdapter, credential_store=credential_store, breakers=circuit_breakers)
    outlook_adapter = providers.Singleton(OutlookAdapter, credential_store=credential_store, breakers=circuit_breakers)
    imap_smtp_adapter = providers.Singleton(
        ImapSmtpAdapter, connection_manager=imap_connection_manager, smtp_controller=smtp_controller
    )
    adapters = providers.Singleton(
        AdapterRegistry, adapters=providers.List(gmail_adapter, outlook_adapter, imap_smtp_adapter)
    )

    thread_assembler = providers.Singleton(ThreadAssembler, thread_repo=repos.thread, message_repo=repos.message)
    deduplicator = providers.Singleton(
        Deduplicator, message_repo=repos.message, account_repo=repos.account, thread_assembler=thread_assembler
    )
    account_syncer = providers.Singleton(
        AccountSyncer,
        account_repo=repos.account,
        message_repo=repos.message,
        sync_health_repo=repos.sync_health,
        adapters=adapters,
        credential_store=credential_store,
        deduplicator=deduplicator,
        thread_assembler=thread_assembler,
    )
    sync_scheduler = providers.Singleton(SyncScheduler, runner=account_syncer.provided.run)
    sync_watcher = providers.Singleton(SyncWatcher, account_repo=repos.account, scheduler=sync_scheduler)

    rate_limiter = providers.Singleton(RateLimiter, rate_limit_repo=repos.rate_limit)
    spam_scorer = providers.Singleton(SpamScorer)
    dispatcher = providers.Singleton(
        Dispatcher,
        message_repo=repos.message,
        adapters=adapters,
        credential_store=credential_store,
        rate_limiter=rate_limiter,
        spam_scorer=spam_scorer,
        thread_assembler=thread_assembler,
    )

    account_controller = providers.Singleton(
        AccountController,
        account_repo=repos.account,
        sync_health_repo=repos.sync_health,
        adapters=adapters,
        credential_store=credential_store,
        oauth_client=oauth_client,
        scheduler=sync_scheduler,
        syncer=account_syncer,
    )
    email_controller = providers.Singleton(
        EmailController,
        account_repo=repos.account,
        thread_repo=repos.thread,
        message_repo=repos.message,
        dispatcher=dispatcher,
        rate_limiter=rate_limiter,
        spam_scorer=spam_scorer,
    )
