# studentapi/db.py
"""
Student API relational store
----------------------------

The student directory's database collaborator: an async SQLAlchemy engine with a
bounded connection pool, the `Students` table, the conventional resource
operations (list / create / update / delete) and a raw query primitive.

The fault harness only ever reaches the database through `execute()`,
`list_students()` and the shared connection pool; it never manages the pool.
PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for development and tests.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, delete, event, insert, select, text, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

LOG = logging.getLogger("studentapi.db")

metadata = MetaData()

students = Table(
    "Students",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    Column("updatedAt", DateTime(timezone=True), nullable=False),
)


class DatabaseNotConnected(RuntimeError):
    pass


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Database:
    """
    Owns the async engine and its pool. Create once per process, `connect()` on
    startup and `dispose()` on shutdown.
    """

    def __init__(self, url: str, pool_size: int = 10, max_overflow: int = 20, pool_timeout: float = 30.0, echo: bool = False):
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseNotConnected("Database.connect() has not been awaited")
        return self._engine

    @property
    def dialect_name(self) -> str:
        return make_url(self.url).get_backend_name()

    def _engine_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"echo": self.echo}
        # in-memory SQLite runs on a single static connection, no pool sizing
        if ":memory:" not in self.url:
            kwargs.update(pool_size=self.pool_size, max_overflow=self.max_overflow, pool_timeout=self.pool_timeout)
        return kwargs

    async def connect(self, create_schema: bool = True):
        if self._engine is not None:
            return
        LOG.info("Creating database engine for: %s", self.url.split("@")[-1])
        engine = create_async_engine(self.url, **self._engine_kwargs())

        @event.listens_for(engine.sync_engine, "connect")
        def _on_connect(dbapi_conn, connection_record):
            LOG.debug("Database connection established")

        @event.listens_for(engine.sync_engine, "checkout")
        def _on_checkout(dbapi_conn, connection_record, connection_proxy):
            LOG.debug("Database connection checked out from pool")

        self._engine = engine
        if create_schema:
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)

    async def dispose(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            LOG.info("Database engine disposed")

    async def ping(self) -> bool:
        try:
            await self.execute("SELECT 1")
            return True
        except (SQLAlchemyError, OSError, DatabaseNotConnected):
            LOG.warning("Database ping failed", exc_info=True)
            return False

    # -------------------------
    # Query primitive
    # -------------------------
    async def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run one raw statement on a pooled connection. Returns rows as dicts
        (empty for statements without a result set). Database errors propagate
        as SQLAlchemy exceptions.
        """
        async with self.engine.connect() as conn:
            result = await conn.execute(text(sql), dict(params or {}))
            if not result.returns_rows:
                await conn.commit()
                return []
            return [dict(r._mapping) for r in result.fetchall()]

    # -------------------------
    # Resource API
    # -------------------------
    async def list_students(self, limit: Optional[int] = None, newest_first: bool = False) -> List[Dict[str, Any]]:
        stmt = select(students)
        stmt = stmt.order_by(students.c.id.desc() if newest_first else students.c.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [dict(r._mapping) for r in result.fetchall()]

    async def get_student(self, student_id: int) -> Optional[Dict[str, Any]]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(students).where(students.c.id == student_id))
            row = result.first()
            return dict(row._mapping) if row else None

    async def create_student(self, name: str, email: str) -> Dict[str, Any]:
        now = _utcnow()
        async with self.engine.begin() as conn:
            result = await conn.execute(insert(students).values(name=name, email=email, createdAt=now, updatedAt=now))
            new_id = result.inserted_primary_key[0]
        return {"id": new_id, "name": name, "email": email, "createdAt": now, "updatedAt": now}

    async def update_student(self, student_id: int, **fields: Any) -> Optional[Dict[str, Any]]:
        values = {k: v for k, v in fields.items() if k in ("name", "email") and v is not None}
        if values:
            values["updatedAt"] = _utcnow()
            async with self.engine.begin() as conn:
                result = await conn.execute(update(students).where(students.c.id == student_id).values(**values))
                if result.rowcount == 0:
                    return None
        return await self.get_student(student_id)

    async def delete_student(self, student_id: int) -> bool:
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(students).where(students.c.id == student_id))
            return result.rowcount > 0
