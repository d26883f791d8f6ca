#!/usr/bin/env python3
"""
Mailsync operations CLI. The sync scheduler itself runs in workers/sync_watcher.py.

Usage:
    python manage.py [--mode MODE] [--account ID]

Modes:
    - sync-once: Sync every active account once, or only --account, then exit (default)
    - list: List linked accounts with their sync health
    - cleanup-rate-limits: Delete send-counter windows that have expired

Environment Variables:
    DATABASE_HOST / DATABASE_NAME: PostgreSQL connection
    PASSWORD_ENCRYPTION_KEY: Fernet key for stored credentials
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

load_dotenv(override=True)
from logging_config import setup_logging  # noqa: E402
from mailsync.container import ApplicationContainer  # noqa: E402
from mailsync.db import fastapi_sqlalchemy_context, session_scope  # noqa: E402
from mailsync.exceptions import BaseError  # noqa: E402

setup_logging()

logger = logging.getLogger(__name__)

# Global container instance
container = ApplicationContainer()


async def run_sync_once(account_id: int | None = None) -> int:
    """Sync accounts one after another. Returns the number of failed accounts."""
    failed = 0
    async with fastapi_sqlalchemy_context():
        syncer = container.controllers.account_syncer()
        account_repo = container.repos.account()
        try:
            async with session_scope():
                account_ids = [account.id for account in await account_repo.get_all_syncable()]
            if account_id is not None:
                account_ids = [account_id]

            logger.info(f"Syncing {len(account_ids)} accounts")
            for current_id in account_ids:
                try:
                    report = await syncer.run(current_id)
                except BaseError as e:
                    failed += 1
                    logger.error(f"Sync failed for account {current_id}: {e}")
                    continue
                if report is None:
                    logger.info(f"Account {current_id} is being synced by another worker, skipped")
                    continue
                logger.info(
                    f"Account {current_id}: fetched {report.fetched}, stored {report.stored}, "
                    f"duplicates {report.duplicates}, skipped {report.skipped}, confirmed {report.confirmed}"
                )
        finally:
            await container.controllers.adapters().close()
            await container.controllers.oauth_client().close_session()
    return failed


async def list_accounts() -> None:
    """List all syncable accounts in the database."""
    async with fastapi_sqlalchemy_context():
        account_repo = container.repos.account()
        sync_health_repo = container.repos.sync_health()
        accounts = await account_repo.get_all_syncable()

        if not accounts:
            logger.info("No active accounts found in database.")
            return

        logger.info(f"Found {len(accounts)} active accounts:")
        logger.info("-" * 100)
        for i, account in enumerate(accounts, 1):
            health = await sync_health_repo.get_for_account(account.id)
            failures = health.consecutive_failures if health else 0
            flag = " FLAGGED" if health and health.is_flagged else ""
            logger.info(
                f"{i:3d}. {account.id:6d} {account.email_address:40} {account.provider.value:8} "
                f"every {account.sync_frequency_seconds:4d}s  last sync {account.last_sync_at}  "
                f"failures {failures}{flag}"
            )
        logger.info("-" * 100)


async def cleanup_rate_limits() -> None:
    async with fastapi_sqlalchemy_context():
        deleted = await container.controllers.rate_limiter().cleanup_expired()
        logger.info(f"Deleted {deleted} expired rate limit windows")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Mailsync operations")
    parser.add_argument(
        "--mode", choices=["sync-once", "list", "cleanup-rate-limits"], default="sync-once", help="Operating mode"
    )
    parser.add_argument("--account", type=int, help="Internal account id (sync-once only)")

    args = parser.parse_args()

    try:
        if args.mode == "sync-once":
            if asyncio.run(run_sync_once(args.account)):
                sys.exit(2)
        elif args.mode == "list":
            asyncio.run(list_accounts())
        elif args.mode == "cleanup-rate-limits":
            asyncio.run(cleanup_rate_limits())

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception:
        logger.exception("Command failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
