from __future__ import annotations
import logging
from typing import AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .core.config import get_settings
from .models import Base

logger = logging.getLogger(__name__)

settings = get_settings()

def build_engine(url: str, **kwargs) -> AsyncEngine:
    eng = create_async_engine(url, echo=False, future=True, **kwargs)
    if eng.dialect.name == "sqlite":
        # kiosk store: the driver's implicit BEGIN breaks SAVEPOINT, so SQLAlchemy emits BEGIN itself;
        # FK checks are off by default in sqlite
        @event.listens_for(eng.sync_engine, "connect")
        def _sqlite_connect(dbapi_conn, _record):
            dbapi_conn.isolation_level = None
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        @event.listens_for(eng.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")
    return eng

engine = build_engine(settings.database_url)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db(bind: AsyncEngine | None = None) -> None:
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("schema ready on %s", (bind or engine).dialect.name)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session
