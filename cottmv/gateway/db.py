from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator, TypeVar

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from cottmv.gateway import domain_models  # noqa: F401 - registers tables on SQLModel.metadata
from cottmv.gateway.config import Settings
from cottmv.gateway.exceptions import ResourceNotFoundError

T = TypeVar("T", bound=SQLModel)

_engine: AsyncEngine | None = None


def _get_engine(settings: Settings) -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    _engine = create_async_engine(settings.database_url, echo=settings.sqlalchemy_echo)
    return _engine


async def create_session(settings: Settings) -> AsyncIterator[AsyncSession]:
    engine = _get_engine(settings)

    SessionLocal = async_sessionmaker(
        engine,
        expire_on_commit=False,
        class_=AsyncSession,
    )
    async with SessionLocal() as session:
        yield session


async def prepare_database(settings: Settings) -> None:
    """Bring the schema to the requested state.

    - DEV (DB_DROP_AND_RECREATE=1):   drop all tables and recreate from scratch
    - default:                        create missing tables
    """
    engine = _get_engine(settings)
    async with engine.begin() as conn:
        if settings.db_drop_and_recreate:
            await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


async def get_or_404(session: AsyncSession, model: type[T], id: Any) -> T:
    result = await session.get(model, id)
    if not result:
        raise ResourceNotFoundError(model.__name__, id)
    return result
