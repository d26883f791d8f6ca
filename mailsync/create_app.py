"""
FastAPI application entry point - mailbox sync and outbound email API
"""

import asyncio
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncGenerator, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi_async_sqlalchemy import SQLAlchemyMiddleware

from mailsync.api.middlewares.auto_commit import AutoCommitMiddleware
from mailsync.api.routes import api_router
from mailsync.api.utils.errors import create_error_response
from mailsync.container import ApplicationContainer
from mailsync.db import database_url, engine_args, session_args
from mailsync.environment import EnvironmentName
from mailsync.exceptions import BaseError, ErrorType
from settings import settings

logger = logging.getLogger(__name__)


def _setup_error_handlers(app: FastAPI) -> None:
    """Setup FastAPI exception handlers."""

    @app.exception_handler(HTTPException)
    async def handle_http_error(request: Request, exc: HTTPException) -> JSONResponse:
        """Handle FastAPI HTTPException errors."""
        return JSONResponse(status_code=exc.status_code or 400, content={"error": exc.detail})

    @app.exception_handler(BaseError)
    async def handle_app_error(request: Request, exc: BaseError) -> JSONResponse:
        """Handle custom BaseError exceptions."""
        if exc.status_code >= 400 and exc.status_code < 500:
            logger.warning(f"A user-related (HTTP 4xx) error occurred; {exc}", extra=exc.extra)
        else:
            logger.exception(f"An app exception occurred; {exc}", extra=exc.extra)

        return create_error_response(exc)

    @app.exception_handler(Exception)
    async def handle_generic_error(request: Request, exc: Exception) -> JSONResponse:
        """Handle any unhandled exceptions."""
        if settings.environment == EnvironmentName.TESTING:
            logging.exception(f"An unhandled exception occurred; error: {exc}")
        logger.exception(f"An unhandled exception occurred; error: {exc}")

        return JSONResponse(status_code=500, content={"error": ErrorType.UNHANDLED_EXCEPTION.value})


def _lifespan(container: ApplicationContainer) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        stop = asyncio.Event()
        watcher_task: asyncio.Task[None] | None = None
        if settings.sync.run_in_api:
            watcher = container.controllers.sync_watcher()
            watcher_task = asyncio.create_task(watcher.run(stop), name="sync-watcher")

        yield

        stop.set()
        if watcher_task is not None:
            await watcher_task
        await container.controllers.adapters().close()
        await container.controllers.oauth_client().close_session()

    return lifespan


def create_app(container: ApplicationContainer) -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Mailsync API",
        description="Mailbox sync and rate-limited outbound email",
        version="1.0.0",
        lifespan=_lifespan(container),
    )
    app.state.container = container

    # Setup error handlers
    _setup_error_handlers(app)

    # Added first so it runs after the SQLAlchemy middleware has opened the session
    app.add_middleware(AutoCommitMiddleware)

    app.add_middleware(
        SQLAlchemyMiddleware, db_url=database_url(), engine_args=engine_args(), session_args=session_args()
    )

    # Include API routers
    app.include_router(api_router, prefix="/v1")

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict[str, object]:
        circuits = container.controllers.circuit_breakers().snapshot()
        return {"status": "ok", "open_circuits": sorted(host for host, state in circuits.items() if state != "closed")}

    return app
