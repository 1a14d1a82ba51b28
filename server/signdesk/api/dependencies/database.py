from collections.abc import AsyncIterator
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.db.session import async_session_factory, get_session
from signdesk.services.document_repository import SqlAlchemyDocumentRepository


async def get_db() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


@lru_cache(maxsize=None)
def get_document_repository() -> SqlAlchemyDocumentRepository:
    # One instance per process so the per-document lock registry is shared.
    return SqlAlchemyDocumentRepository(async_session_factory)
