"""Connection Broker: hands out connections authenticated as a role.

Every connection is released on every exit path. A connection whose
statement was cancelled or timed out, or whose link to the server broke,
is destroyed rather than pooled.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from dbconsole.core.exceptions import (
    BackendUnavailableError,
    ConsoleError,
    InternalError,
)
from dbconsole.core.logging import get_logger
from dbconsole.db.backend import Backend, Connection
from dbconsole.db.errors import translate_db_error
from dbconsole.security.sealer import CookieSealer

logger = get_logger(__name__)

T = TypeVar("T")


class ConnectionBroker:
    def __init__(self, backend: Backend, sealer: CookieSealer, *, operation_timeout_seconds: float):
        self.backend = backend
        self.sealer = sealer
        self.operation_timeout_seconds = operation_timeout_seconds

    async def _open(self, role: str, password: str, database: str) -> Connection:
        try:
            async with asyncio.timeout(self.operation_timeout_seconds):
                conn = await self.backend.open(role, password, database)
        except TimeoutError as exc:
            raise BackendUnavailableError(
                "Timed out connecting to the database", reason="timeout", cause=exc
            ) from exc
        except ConsoleError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            raise translate_db_error(exc) from exc

        if conn.role != role:
            await conn.discard()
            raise InternalError("Connection authenticated as an unexpected role")
        return conn

    async def _release(self, conn: Connection, reusable: bool) -> None:
        try:
            if reusable:
                await conn.close()
            else:
                await conn.discard()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "Failed to release connection",
                data={"role": conn.role, "database": conn.database, "error": str(exc)},
            )

    @asynccontextmanager
    async def connection(
        self,
        role: str,
        database: str,
        *,
        sealed_password: Optional[bytes] = None,
        password: Optional[str] = None,
    ) -> AsyncIterator[Connection]:
        """Borrow a connection for ``role`` on ``database``.

        Pass the sealed password held by a session, or a plaintext password
        during login. The body runs under the operation timeout.
        """
        if password is None:
            if sealed_password is None:
                raise InternalError("No credential supplied for connection")
            password = self.sealer.open_secret(sealed_password)

        conn = await self._open(role, password, database)
        reusable = False
        try:
            async with asyncio.timeout(self.operation_timeout_seconds):
                yield conn
            reusable = True
        except TimeoutError as exc:
            logger.warning(
                "Database operation timed out",
                data={"role": role, "database": database, "timeout": self.operation_timeout_seconds},
            )
            raise BackendUnavailableError(
                "The database did not answer in time", reason="timeout", cause=exc
            ) from exc
        except ConsoleError as exc:
            reusable = not isinstance(exc, BackendUnavailableError)
            raise
        except (SQLAlchemyError, OSError) as exc:
            error = translate_db_error(exc)
            reusable = not isinstance(error, BackendUnavailableError)
            raise error from exc
        finally:
            # Cancellation lands here with reusable still False.
            await self._release(conn, reusable)

    async def run(
        self,
        role: str,
        database: str,
        fn: Callable[[Connection], Awaitable[T]],
        *,
        sealed_password: Optional[bytes] = None,
        password: Optional[str] = None,
    ) -> T:
        """Run ``fn`` with a borrowed connection and return its result."""
        async with self.connection(
            role, database, sealed_password=sealed_password, password=password
        ) as conn:
            return await fn(conn)

    async def dispose_role(self, role: str) -> None:
        await self.backend.dispose(role)

    async def close(self) -> None:
        await self.backend.dispose()
