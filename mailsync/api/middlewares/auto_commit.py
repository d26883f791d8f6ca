"""
Middleware that commits the request's database session once the response is ready.
"""

import logging
from typing import Awaitable, Callable

from fastapi import Request, Response
from fastapi_async_sqlalchemy import db
from fastapi_async_sqlalchemy.exceptions import MissingSessionError
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class AutoCommitMiddleware(BaseHTTPMiddleware):
    """
    Commits pending changes of successful requests and rolls back the rest.

    Controllers commit at their own consistency points (a stored message, a
    counted send); this catches whatever a handler left pending. An error
    response never commits, so a rejected request cannot leave partial rows.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        try:
            response = await call_next(request)
        except Exception:
            await self._rollback(request)
            raise

        if response.status_code < 400:
            try:
                await db.session.commit()
            except MissingSessionError:
                logger.debug(f"No database session for {request.url.path}; nothing to commit")
        else:
            await self._rollback(request)
        return response

    async def _rollback(self, request: Request) -> None:
        try:
            await db.session.rollback()
            logger.debug(f"Rolled back database session for {request.url.path}")
        except MissingSessionError:
            logger.debug(f"No database session for {request.url.path}; nothing to roll back")
