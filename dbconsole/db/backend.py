"""Narrow backend interface and its SQLAlchemy implementation.

The core never touches a driver directly. It opens a ``Connection`` as a
role, executes SQL, and brackets writes in ``begin_tx``/``commit_tx``/
``rollback_tx``. Outside an explicit transaction every statement commits
on its own.

Results that may be large are read through a ``RowWindow``: rows before
the window are skipped, rows inside it are kept, and reading stops once
enough rows have been seen to page and count.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from dbconsole.core.logging import get_logger

logger = get_logger(__name__)

# Rows pulled from a server-side cursor per round trip
STREAM_BATCH_SIZE = 500


@dataclass
class QueryRows:
    """Materialised result of one statement."""

    columns: list[str] = field(default_factory=list)
    rows: list[tuple] = field(default_factory=list)
    rowcount: int = -1
    returns_rows: bool = False
    # Rows read from the server, which may exceed len(rows) under a window
    counted: Optional[int] = None


@dataclass(frozen=True)
class RowWindow:
    """The slice of a result to keep and how far to read for counting."""

    offset: int
    limit: int
    count_limit: int = 0

    @property
    def read_limit(self) -> int:
        return max(self.offset + self.limit + 1, self.count_limit)


class RowCollector:
    """Keeps the rows of a window while counting the rows read."""

    def __init__(self, window: RowWindow):
        self.window = window
        self.rows: list[tuple] = []
        self.seen = 0

    @property
    def full(self) -> bool:
        return self.seen >= self.window.read_limit

    def add(self, rows: Iterable[Any]) -> None:
        start = self.window.offset
        stop = start + self.window.limit
        if self.full:
            return
        for row in rows:
            if start <= self.seen < stop:
                self.rows.append(tuple(row))
            self.seen += 1
            if self.full:
                return


class Connection(Protocol):
    """A live connection authenticated as exactly one role."""

    role: str
    database: str

    async def execute(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        window: Optional[RowWindow] = None,
    ) -> QueryRows:
        """Run SQL with named ``:param`` placeholders."""
        ...

    async def stream(
        self, sql: str, params: Optional[Mapping[str, Any]], *, window: RowWindow
    ) -> QueryRows:
        """Run a row-returning statement on a server-side cursor, reading only ``window``."""
        ...

    async def begin_tx(self) -> None: ...

    async def commit_tx(self) -> None: ...

    async def rollback_tx(self) -> None: ...

    async def close(self) -> None:
        """Return the connection to its pool."""
        ...

    async def discard(self) -> None:
        """Destroy the connection instead of pooling it."""
        ...


class Backend(Protocol):
    """Opens connections authenticated as a role."""

    async def open(self, role: str, password: str, database: str) -> Connection: ...

    async def dispose(self, role: Optional[str] = None) -> None: ...


def _materialise(result, window: Optional[RowWindow]) -> QueryRows:
    if not result.returns_rows:
        return QueryRows(rowcount=result.rowcount)
    columns = list(result.keys())
    rowcount = result.rowcount
    if window is None:
        rows = [tuple(row) for row in result.fetchall()]
        return QueryRows(columns, rows, rowcount, True, counted=len(rows))
    collector = RowCollector(window)
    try:
        collector.add(result)
    finally:
        result.close()
    return QueryRows(columns, collector.rows, rowcount, True, counted=collector.seen)


class SqlAlchemyConnection:
    """``Connection`` over a SQLAlchemy ``AsyncConnection``."""

    def __init__(self, conn: AsyncConnection, role: str, database: str):
        self._conn = conn
        self.role = role
        self.database = database
        self._in_tx = False

    async def execute(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        window: Optional[RowWindow] = None,
    ) -> QueryRows:
        result = await self._conn.execute(text(sql), dict(params or {}))
        rows = _materialise(result, window)
        if not self._in_tx:
            await self._conn.commit()
        return rows

    async def stream(
        self, sql: str, params: Optional[Mapping[str, Any]], *, window: RowWindow
    ) -> QueryRows:
        result = await self._conn.stream(text(sql), dict(params or {}))
        collector = RowCollector(window)
        try:
            columns = list(result.keys())
            async for batch in result.partitions(STREAM_BATCH_SIZE):
                collector.add(batch)
                if collector.full:
                    break
        finally:
            await result.close()
        if not self._in_tx:
            await self._conn.commit()
        return QueryRows(columns, collector.rows, -1, True, counted=collector.seen)

    async def begin_tx(self) -> None:
        await self._conn.begin()
        self._in_tx = True

    async def commit_tx(self) -> None:
        try:
            await self._conn.commit()
        finally:
            self._in_tx = False

    async def rollback_tx(self) -> None:
        try:
            await self._conn.rollback()
        finally:
            self._in_tx = False

    async def close(self) -> None:
        await self._conn.close()

    async def discard(self) -> None:
        try:
            await self._conn.invalidate()
        finally:
            await self._conn.close()


def _password_digest(password: str) -> str:
    # Pools are keyed by credentials without keeping the password as a key.
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


class SqlAlchemyBackend:
    """Backend that keeps one async engine per (role, password, database).

    Each engine's pool is bounded by ``per_role_max`` so one role cannot
    starve the others, and a pool only ever hands out connections that
    authenticated with that role's credentials.
    """

    def __init__(self, url_template: str, *, per_role_max: int = 5, pool_timeout: float = 30.0):
        self.url_template = url_template
        self.per_role_max = per_role_max
        self.pool_timeout = pool_timeout
        self._engines: dict[tuple[str, str, str], AsyncEngine] = {}

    def engine_url(self, role: str, password: str, database: str) -> URL:
        url = make_url(self.url_template.format(database=database))
        return url.set(username=role, password=password)

    def make_engine(self, url: URL) -> AsyncEngine:
        """Create an async engine with dialect-specific configuration.

        - PostgreSQL (asyncpg): bounded pool with pre-ping
        - SQLite (aiosqlite): check_same_thread=False, no pool sizing
        """
        connect_args: dict = {}
        kwargs: dict = {"pool_pre_ping": True}

        if url.drivername.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        else:
            kwargs["pool_size"] = self.per_role_max
            kwargs["max_overflow"] = 0
            kwargs["pool_timeout"] = self.pool_timeout

        kwargs["connect_args"] = connect_args
        return create_async_engine(url, **kwargs)

    def _engine_for(self, role: str, password: str, database: str) -> AsyncEngine:
        key = (role, _password_digest(password), database)
        engine = self._engines.get(key)
        if engine is None:
            engine = self.make_engine(self.engine_url(role, password, database))
            self._engines[key] = engine
            logger.debug("Created engine", data={"role": role, "database": database})
        return engine

    async def open(self, role: str, password: str, database: str) -> SqlAlchemyConnection:
        engine = self._engine_for(role, password, database)
        conn = await engine.connect()
        return SqlAlchemyConnection(conn, role=role, database=database)

    async def dispose(self, role: Optional[str] = None) -> None:
        """Dispose engines for one role, or all engines when ``role`` is None."""
        keys = [key for key in self._engines if role is None or key[0] == role]
        for key in keys:
            engine = self._engines.pop(key)
            await engine.dispose()
        if keys:
            logger.info("Disposed engines", data={"role": role, "count": len(keys)})
