from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi_async_sqlalchemy import SQLAlchemyMiddleware, db
from starlette.applications import Starlette

from settings import settings


def database_url() -> str:
    return f"{settings.database.async_host}/{settings.database.name}"


def engine_args() -> dict[str, object]:
    return {
        "pool_size": settings.database.min_pool_size,
        "max_overflow": settings.database.max_pool_size - settings.database.min_pool_size,
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }


def session_args() -> dict[str, object]:
    # Models stay readable after commit, outside of any lazy load.
    return {"expire_on_commit": False}


@asynccontextmanager
async def fastapi_sqlalchemy_context() -> AsyncGenerator[None, None]:
    """Initialize fastapi_async_sqlalchemy for standalone scripts."""
    # A throwaway Starlette app is enough to bind the global session factory.
    SQLAlchemyMiddleware(
        Starlette(), db_url=database_url(), engine_args=engine_args(), session_args=session_args()
    )

    async with db():
        yield


@asynccontextmanager
async def session_scope() -> AsyncGenerator[None, None]:
    """A fresh session for one unit of background work (one sync run)."""
    async with db(commit_on_exit=True):
        yield
