"""Request Coordinator: the single entry point for user operations.

Each operation runs against an already validated ``Session``. Reads and
ad-hoc queries borrow a connection as the session's user; staged edits go
through the Transaction Manager; permission questions go to the gate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Union

from dbconsole.access.cache import AccessCache, AccessLoader
from dbconsole.access.gate import RbacGate
from dbconsole.access.models import Operation, RoleAccess, TableAccess, TableRef
from dbconsole.auth.session import IssuedCookies, Session, SessionRegistry
from dbconsole.config import Settings
from dbconsole.core.exceptions import AuthError, InputValidationError, NotFoundError
from dbconsole.core.logging import get_logger
from dbconsole.db.broker import ConnectionBroker
from dbconsole.db.catalog import CatalogProbe
from dbconsole.services.dataview import (
    Page,
    PagedResult,
    Pager,
    QueryRunner,
    Sort,
    StatementResult,
    TableReader,
)
from dbconsole.transactions.manager import Credentials, TransactionManager
from dbconsole.transactions.models import OpSpec, StagedOp, Transaction

logger = get_logger(__name__)


class _NotVisible:
    """Marker for a parent row the user is not permitted to see."""

    def __repr__(self) -> str:
        return "NOT_VISIBLE"

    def to_dict(self) -> dict[str, Any]:
        return {"visible": False}


NOT_VISIBLE = _NotVisible()


@dataclass
class LoginResult:
    session: Session
    cookies: IssuedCookies
    access: RoleAccess
    first_table: Optional[TableRef] = None

    def to_dict(self) -> dict[str, Any]:
        first = self.first_table
        return {
            "username": self.session.username,
            "access": self.access.to_dict(),
            "first_database": first.database if first else None,
            "first_schema": first.schema if first else None,
            "first_table": first.table if first else None,
        }


class RequestCoordinator:
    def __init__(
        self,
        settings: Settings,
        *,
        registry: SessionRegistry,
        cache: AccessCache,
        gate: RbacGate,
        broker: ConnectionBroker,
        probe: CatalogProbe,
        transactions: TransactionManager,
    ):
        self.settings = settings
        self.registry = registry
        self.cache = cache
        self.gate = gate
        self.broker = broker
        self.probe = probe
        self.transactions = transactions
        pager = Pager(settings.pagination_hard_cap, settings.pagination_count_cap)
        self.reader = TableReader(pager)
        self.runner = QueryRunner(pager)

    # -- authentication ----------------------------------------------------

    def _loader(self, session: Session) -> AccessLoader:
        async def load() -> RoleAccess:
            async with self.broker.connection(
                session.username,
                self.settings.default_database,
                sealed_password=session.sealed_password,
            ) as conn:
                return await self.probe.probe_role(
                    conn,
                    session.username,
                    lambda database: self.broker.connection(
                        session.username, database, sealed_password=session.sealed_password
                    ),
                )

        return load

    async def _authenticate(self, username: str, password: str) -> RoleAccess:
        async with self.broker.connection(
            username, self.settings.default_database, password=password
        ) as conn:
            # Verify the password even when a cached view exists.
            await conn.execute("SELECT 1")

            async def load() -> RoleAccess:
                return await self.probe.probe_role(
                    conn,
                    username,
                    lambda database: self.broker.connection(username, database, password=password),
                )

            return await self.cache.get_or_load(username, load)

    async def login(self, username: str, password: str) -> LoginResult:
        """Authenticate against the backend and open a session.

        Raises:
            AuthError: bad credentials, or reason ``no-resources`` when the
                role cannot see a single table.
        """
        if not username or not password:
            raise InputValidationError("Username and password are required")

        access = await self._authenticate(username, password)
        if access.is_empty:
            logger.info("Login refused: no accessible tables", data={"username": username})
            raise AuthError("No accessible databases or tables for this user", reason="no-resources")

        session, cookies = await self.registry.create(username, password)
        logger.info("Login succeeded", data={"username": username})
        return LoginResult(session, cookies, access, access.first_table())

    async def resume(self, identity_token: str) -> LoginResult:
        """Re-authenticate silently from an identity cookie."""
        username, password = self.registry.open_identity(identity_token)
        return await self.login(username, password)

    async def authenticate(self, session_token: str) -> Session:
        return await self.registry.validate(session_token)

    async def logout(self, session_id: Optional[str]) -> None:
        session = await self.registry.destroy(session_id)
        if session is not None and not await self.registry.has_sessions(session.username):
            await self.broker.dispose_role(session.username)

    async def refresh_session(self, session: Session) -> tuple[Session, str]:
        return await self.registry.rotate(session.id)

    # -- access --------------------------------------------------------------

    async def list_access(self, session: Session) -> RoleAccess:
        return await self.cache.get_or_load(session.username, self._loader(session))

    async def refresh_access(self, session: Session) -> RoleAccess:
        access = await self.cache.refresh(session.username, self._loader(session))
        logger.info("Access refreshed", data={"username": session.username})
        return access

    async def describe_table(self, session: Session, target: TableRef) -> TableAccess:
        return await self.gate.require_table(
            session.username, Operation.SELECT, target, loader=self._loader(session)
        )

    # -- reads -------------------------------------------------------------

    async def read_table(
        self,
        session: Session,
        target: TableRef,
        *,
        where: Optional[str] = None,
        sort: Optional[Sort] = None,
        page: Optional[Page] = None,
    ) -> PagedResult:
        table = await self.describe_table(session, target)
        return await self._read(session, table, where=where, sort=sort, page=page)

    async def _read(
        self,
        session: Session,
        table: TableAccess,
        *,
        where: Optional[str] = None,
        equals: Optional[Mapping[str, Any]] = None,
        sort: Optional[Sort] = None,
        page: Optional[Page] = None,
    ) -> PagedResult:
        async with self.broker.connection(
            session.username, table.ref.database, sealed_password=session.sealed_password
        ) as conn:
            return await self.reader.read(
                conn, table, where=where, equals=equals, sort=sort, page=page
            )

    async def execute_adhoc(
        self,
        session: Session,
        database: str,
        sql: str,
        *,
        parameters: Optional[Sequence[Any]] = None,
        page: Optional[Page] = None,
    ) -> list[StatementResult]:
        await self.gate.require(
            session.username, Operation.CONNECT, database, loader=self._loader(session)
        )
        async with self.broker.connection(
            session.username, database, sealed_password=session.sealed_password
        ) as conn:
            return await self.runner.run(conn, sql, parameters=parameters, page=page)

    async def navigate_parent(
        self,
        session: Session,
        target: TableRef,
        constraint: str,
        row: Mapping[str, Any],
    ) -> Union[PagedResult, _NotVisible]:
        """Fetch the row a foreign key of ``row`` points at."""
        table = await self.describe_table(session, target)
        fk = table.foreign_key(constraint)
        if fk is None:
            raise NotFoundError("Foreign key not found", details={"constraint": constraint})
        missing = [column for column in fk.columns if column not in row]
        if missing:
            raise InputValidationError("Row is missing key columns", details={"columns": missing})

        access = await self.list_access(session)
        parent = access.table(fk.referenced)
        if parent is None:
            return NOT_VISIBLE
        equals = dict(zip(fk.referenced_columns, (row[column] for column in fk.columns)))
        return await self._read(session, parent, equals=equals, page=Page(limit=1))

    async def navigate_children(
        self,
        session: Session,
        target: TableRef,
        child: TableRef,
        constraint: str,
        row: Mapping[str, Any],
        *,
        page: Optional[Page] = None,
    ) -> PagedResult:
        """Rows of ``child`` whose foreign key references ``row``."""
        await self.describe_table(session, target)
        child_table = await self.describe_table(session, child)
        fk = child_table.foreign_key(constraint)
        if fk is None or fk.referenced != target:
            raise NotFoundError("Foreign key not found", details={"constraint": constraint})
        missing = [column for column in fk.referenced_columns if column not in row]
        if missing:
            raise InputValidationError("Row is missing key columns", details={"columns": missing})
        equals = dict(zip(fk.columns, (row[column] for column in fk.referenced_columns)))
        return await self._read(session, child_table, equals=equals, page=page)

    # -- transactions --------------------------------------------------------

    async def start_transaction(self, session: Session, target: TableRef) -> Transaction:
        return await self.transactions.start(
            session.username, target, loader=self._loader(session)
        )

    async def stage_op(self, session: Session, tx_id: str, spec: OpSpec) -> StagedOp:
        return await self.transactions.stage(
            session.username, tx_id, spec, loader=self._loader(session)
        )

    async def commit(self, session: Session, tx_id: str) -> Transaction:
        return await self.transactions.commit(
            session.username,
            tx_id,
            Credentials(session.username, session.sealed_password),
            loader=self._loader(session),
        )

    async def rollback(self, session: Session, tx_id: str) -> Transaction:
        return await self.transactions.rollback(session.username, tx_id)

    async def extend_transaction(self, session: Session, tx_id: str) -> Transaction:
        return await self.transactions.extend(session.username, tx_id)

    async def transaction_status(self, session: Session, tx_id: str) -> dict[str, Any]:
        return await self.transactions.status(session.username, tx_id)

    async def active_transaction(self, session: Session) -> Optional[dict[str, Any]]:
        tx = await self.transactions.active_for(session.username)
        if tx is None:
            return None
        return tx.status(self.transactions.clock.monotonic())
