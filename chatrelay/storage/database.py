# chatrelay/storage/database.py
from __future__ import annotations

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return create_async_engine(db_url, echo=echo, pool_pre_ping=True)

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(db_url, echo=echo, connect_args={"check_same_thread": False})
    else:
        # In-memory: every session must see the same connection
        engine = create_async_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    # SQLite leaves FK enforcement off unless asked; cascade deletes depend on it
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_fk(dbapi_conn, _record):  # noqa: ANN001
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
