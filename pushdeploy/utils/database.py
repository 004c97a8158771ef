"""Session helpers shared by the API layer and the services."""

from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager
from typing import TypeAlias

from sqlalchemy.ext.asyncio import AsyncSession

from .db_manager import db_manager

# Factory of short-lived sessions; services open one per unit of work.
SessionFactory: TypeAlias = Callable[[], AbstractAsyncContextManager[AsyncSession]]


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session of the global run store.

    Tests override this dependency to point the API at another database.
    """
    async for session in db_manager.get_async_session():
        yield session
