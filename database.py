from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import get_settings
from errors import TransientStoreError


def _create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    url = database_url or get_settings().database_url
    connect_args: dict[str, object] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    eng = create_async_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        event.listen(eng.sync_engine, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_sessionmaker(eng: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


engine = _create_engine()
SessionLocal = make_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


async def create_schema(eng: AsyncEngine) -> None:
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[AsyncSession]:
    session: AsyncSession = (sessions or SessionLocal)()
    try:
        yield session
        await session.commit()
    except (OperationalError, InterfaceError) as exc:
        await session.rollback()
        raise TransientStoreError(str(exc.orig or exc)) from exc
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
