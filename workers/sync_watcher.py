"""
Standalone sync process: one asyncio worker per active, sync-enabled account.

Run it next to the API (with SYNC_RUN_IN_API unset) so HTTP workers never sync.
"""

import asyncio
import logging
import os
import signal
import sys

import sentry_sdk
from dotenv import load_dotenv

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../")))
load_dotenv("./.env", override=True)

from logging_config import setup_logging  # noqa: E402
from mailsync.container import get_wire_container  # noqa: E402
from mailsync.db import fastapi_sqlalchemy_context  # noqa: E402
from settings import settings  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)

if settings.sentry.is_enabled:
    sentry_sdk.init(dsn=settings.sentry.dsn, environment=settings.environment.value, send_default_pii=False)

container = get_wire_container()


async def main() -> None:
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with fastapi_sqlalchemy_context():
        watcher = container.controllers.sync_watcher()
        try:
            await watcher.run(stop)
        finally:
            logger.info("Closing provider connections")
            await container.controllers.adapters().close()
            await container.controllers.oauth_client().close_session()


if __name__ == "__main__":
    logger.info("Starting sync watcher")
    asyncio.run(main())
