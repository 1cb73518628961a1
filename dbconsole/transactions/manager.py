"""Transaction Manager: staged edits with a lease, committed atomically.

Locking: the index lock guards the owner and id maps and is never held
across backend I/O. Each transaction's own lock serialises staging and
commit for that transaction. When both are needed, the transaction lock
is taken first.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from dbconsole.access.cache import AccessLoader
from dbconsole.access.gate import RbacGate, check
from dbconsole.access.models import Operation, TableAccess, TableRef
from dbconsole.core.clock import Clock, new_id
from dbconsole.core.exceptions import (
    ConflictError,
    ConsoleError,
    ExpiredError,
    GateDeniedError,
    InputValidationError,
    NotFoundError,
)
from dbconsole.core.logging import get_logger
from dbconsole.db.backend import Connection
from dbconsole.db.broker import ConnectionBroker
from dbconsole.transactions.collapse import (
    InsertStatement,
    collapse,
    describe,
    render,
    statement_row,
)
from dbconsole.transactions.models import (
    REQUIRED_PRIVILEGE,
    NewRow,
    OpKind,
    OpSpec,
    RowKey,
    RowRef,
    StagedOp,
    Transaction,
    TxState,
)

logger = get_logger(__name__)

_SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class Credentials:
    role: str
    sealed_password: bytes


class TransactionManager:
    def __init__(
        self,
        gate: RbacGate,
        broker: ConnectionBroker,
        *,
        lease_seconds: float,
        grace_seconds: float,
        max_ops: int,
        clock: Optional[Clock] = None,
    ):
        self.gate = gate
        self.broker = broker
        self.lease_seconds = lease_seconds
        self.grace_seconds = grace_seconds
        self.max_ops = max_ops
        self.clock = clock or Clock()
        self._transactions: dict[str, Transaction] = {}
        self._active: dict[str, str] = {}
        self._index_lock = asyncio.Lock()

    # -- index helpers (callers hold the index lock) ----------------------

    def _end(self, tx: Transaction, state: TxState, now: float) -> None:
        tx.state = state
        tx.ended_at = now
        if state is not TxState.COMMITTED:
            tx.ops.clear()
        if self._active.get(tx.owner) == tx.id:
            del self._active[tx.owner]

    def _expire(self, tx: Transaction, now: float) -> None:
        self._end(tx, TxState.EXPIRED, now)
        logger.info("Transaction expired", data={"transaction_id": tx.id, "owner": tx.owner})

    def _current(self, owner: str, now: float) -> Optional[Transaction]:
        tx_id = self._active.get(owner)
        tx = self._transactions.get(tx_id) if tx_id else None
        if tx is None:
            return None
        if tx.state is TxState.ACTIVE and now >= tx.deadline:
            self._expire(tx, now)
            return None
        return None if tx.state.is_terminal else tx

    # -- lookups -----------------------------------------------------------

    def _get(self, owner: str, tx_id: str) -> Transaction:
        tx = self._transactions.get(tx_id)
        if tx is None or tx.owner != owner:
            raise NotFoundError("Transaction not found")
        return tx

    async def _ensure_live(self, tx: Transaction) -> None:
        now = self.clock.monotonic()
        if tx.state is TxState.ACTIVE and now >= tx.deadline:
            async with self._index_lock:
                self._expire(tx, now)
        if tx.state is TxState.EXPIRED:
            raise ExpiredError()
        if tx.state.is_terminal:
            raise ConflictError(f"Transaction is already {tx.state.value}", reason="closed")

    @staticmethod
    def _reject_if_committing(tx: Transaction) -> None:
        if tx.state is TxState.COMMITTING:
            raise ConflictError("Transaction is being committed", reason="busy")

    async def active_for(self, owner: str) -> Optional[Transaction]:
        async with self._index_lock:
            return self._current(owner, self.clock.monotonic())

    async def status(self, owner: str, tx_id: str) -> dict:
        tx = self._get(owner, tx_id)
        now = self.clock.monotonic()
        if tx.state is TxState.ACTIVE and now >= tx.deadline:
            async with self._index_lock:
                self._expire(tx, now)
        return tx.status(now)

    # -- lifecycle ---------------------------------------------------------

    async def start(
        self, owner: str, target: TableRef, *, loader: Optional[AccessLoader] = None
    ) -> Transaction:
        table = await self.gate.require_table(owner, Operation.SELECT, target, loader=loader)
        privileges = table.privileges
        if not (privileges.insert or privileges.update or privileges.delete):
            raise GateDeniedError(
                f"Role may not modify {target.qualified}",
                details={"target": target.qualified},
            )

        async with self._index_lock:
            now = self.clock.monotonic()
            current = self._current(owner, now)
            if current is not None:
                raise ConflictError(
                    "User already has an active transaction",
                    reason="active-transaction",
                    details={"transaction_id": current.id},
                )
            tx = Transaction(
                id=new_id(),
                owner=owner,
                target=target,
                started_at=now,
                deadline=now + self.lease_seconds,
            )
            self._transactions[tx.id] = tx
            self._active[owner] = tx.id

        logger.info(
            "Transaction started",
            data={"transaction_id": tx.id, "owner": owner, "target": target.qualified},
        )
        return tx

    async def extend(self, owner: str, tx_id: str) -> Transaction:
        tx = self._get(owner, tx_id)
        self._reject_if_committing(tx)
        async with tx.lock:
            await self._ensure_live(tx)
            tx.deadline = self.clock.monotonic() + self.lease_seconds
        return tx

    async def stage(
        self, owner: str, tx_id: str, spec: OpSpec, *, loader: Optional[AccessLoader] = None
    ) -> StagedOp:
        """Validate and append one operation to an active transaction.

        Deleting a row that is already staged for deletion appends nothing
        and returns the earlier delete, so repeating a delete is harmless.
        """
        tx = self._get(owner, tx_id)
        self._reject_if_committing(tx)
        async with tx.lock:
            await self._ensure_live(tx)
            table = await self.gate.require_table(
                owner, REQUIRED_PRIVILEGE[spec.kind], tx.target, loader=loader
            )
            # The gate may have waited on a probe; the deadline is re-checked.
            await self._ensure_live(tx)
            if len(tx.ops) >= self.max_ops:
                raise InputValidationError(
                    f"Transaction already holds {self.max_ops} operations; commit or roll back"
                )
            op = self._build_op(tx, table, spec)
            if op not in tx.ops:
                tx.ops.append(op)
        logger.debug(
            "Operation staged",
            data={"transaction_id": tx.id, "op_id": op.id, "kind": op.kind.value},
        )
        return op

    def _resolve_row(self, tx: Transaction, table: TableAccess, spec: OpSpec) -> RowRef:
        if spec.new_row is not None:
            if spec.row_key is not None:
                raise InputValidationError("Give either row_key or new_row, not both")
            if spec.new_row not in tx.pending_inserts():
                raise InputValidationError("Unknown pending row")
            return NewRow(spec.new_row)

        if spec.row_key is None:
            raise InputValidationError("row_key is required")
        if not table.primary_key:
            raise InputValidationError(
                f"{table.ref.qualified} has no primary key; its rows cannot be edited"
            )
        if set(spec.row_key) != set(table.primary_key):
            raise InputValidationError(
                "row_key must name exactly the primary key columns",
                details={"primary_key": list(table.primary_key)},
            )
        if not all(isinstance(value, _SCALAR_TYPES) for value in spec.row_key.values()):
            raise InputValidationError("Primary key values must be scalars")
        return RowKey.from_mapping(spec.row_key, table.primary_key)

    def _build_op(self, tx: Transaction, table: TableAccess, spec: OpSpec) -> StagedOp:
        now = self.clock.monotonic()

        if spec.kind is OpKind.INSERT_ROW:
            values = dict(spec.values or {})
            unknown = sorted(column for column in values if not table.has_column(column))
            if unknown:
                raise InputValidationError("Unknown columns", details={"columns": unknown})
            return StagedOp(
                id=new_id(),
                kind=spec.kind,
                target=tx.target,
                row=NewRow(new_id()),
                created_at=now,
                values=values,
            )

        row = self._resolve_row(tx, table, spec)
        if tx.is_deleted(row):
            if spec.kind is OpKind.DELETE_ROW:
                return next(
                    op for op in tx.ops if op.kind is OpKind.DELETE_ROW and op.row == row
                )
            raise InputValidationError("Row is already staged for deletion")

        if spec.kind is OpKind.UPDATE_CELL:
            if not spec.column or not table.has_column(spec.column):
                raise InputValidationError("Unknown column", details={"column": spec.column})
            return StagedOp(
                id=new_id(),
                kind=spec.kind,
                target=tx.target,
                row=row,
                created_at=now,
                column=spec.column,
                old_value=spec.old_value,
                new_value=spec.new_value,
            )

        return StagedOp(id=new_id(), kind=spec.kind, target=tx.target, row=row, created_at=now)

    async def commit(
        self,
        owner: str,
        tx_id: str,
        credentials: Credentials,
        *,
        loader: Optional[AccessLoader] = None,
    ) -> Transaction:
        """Apply the collapsed operations in one backend transaction.

        On any failure the backend transaction is rolled back, nothing is
        applied, and the transaction returns to active with its staged
        operations intact and the offending ones flagged.
        """
        tx = self._get(owner, tx_id)
        self._reject_if_committing(tx)
        async with tx.lock:
            await self._ensure_live(tx)
            tx.state = TxState.COMMITTING
            try:
                applied = await self._apply(tx, credentials, loader)
            except BaseException as exc:
                tx.state = TxState.ACTIVE
                tx.last_error = exc.kind if isinstance(exc, ConsoleError) else type(exc).__name__
                logger.info(
                    "Transaction commit failed",
                    data={"transaction_id": tx.id, "error": tx.last_error, "flagged": len(tx.flagged_ops)},
                )
                raise
            async with self._index_lock:
                self._end(tx, TxState.COMMITTED, self.clock.monotonic())
            tx.flagged_ops.clear()
            tx.last_error = None

        logger.info(
            "Transaction committed",
            data={"transaction_id": tx.id, "owner": owner, "statements": applied},
        )
        return tx

    async def _apply(
        self, tx: Transaction, credentials: Credentials, loader: Optional[AccessLoader]
    ) -> int:
        access = await self.gate.access_for(tx.owner, loader)
        offending = [
            op.id for op in tx.ops if not check(access, REQUIRED_PRIVILEGE[op.kind], op.target)
        ]
        if offending:
            tx.flagged_ops = set(offending)
            raise GateDeniedError(
                "Permissions changed; some staged operations are no longer allowed",
                details={"flagged_ops": offending},
            )

        statements = collapse(tx.ops)
        if not statements:
            return 0

        async with self.broker.connection(
            credentials.role, tx.target.database, sealed_password=credentials.sealed_password
        ) as conn:
            await conn.begin_tx()
            current = None
            try:
                for index, statement in enumerate(statements):
                    current = statement
                    sql, params = render(statement)
                    result = await conn.execute(sql, params)
                    if not isinstance(statement, InsertStatement) and result.rowcount == 0:
                        raise ConflictError(
                            "Row changed or vanished since it was read",
                            reason="stale-row",
                            details={"statement": index, **describe(statement)},
                        )
                await conn.commit_tx()
            except asyncio.CancelledError:
                # The broker destroys the connection; the server rolls back.
                raise
            except (ConsoleError, SQLAlchemyError, OSError):
                if current is not None:
                    row = statement_row(current)
                    tx.flagged_ops = {op.id for op in tx.ops if op.row == row}
                await self._rollback_quietly(conn)
                raise
        return len(statements)

    async def _rollback_quietly(self, conn: Connection) -> None:
        try:
            await conn.rollback_tx()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Rollback after failed commit also failed", data={"error": str(exc)})

    async def rollback(self, owner: str, tx_id: str) -> Transaction:
        """Discard staged operations. A no-op for expired or rolled-back transactions."""
        tx = self._get(owner, tx_id)
        self._reject_if_committing(tx)
        async with tx.lock:
            now = self.clock.monotonic()
            async with self._index_lock:
                if tx.state is TxState.ACTIVE and now >= tx.deadline:
                    self._expire(tx, now)
                if tx.state in (TxState.ROLLED_BACK, TxState.EXPIRED):
                    return tx
                if tx.state is TxState.COMMITTED:
                    raise ConflictError("Transaction is already committed", reason="closed")
                self._end(tx, TxState.ROLLED_BACK, now)
        logger.info("Transaction rolled back", data={"transaction_id": tx.id, "owner": owner})
        return tx

    async def sweep(self) -> tuple[int, int]:
        """Expire overdue transactions and forget old terminal ones.

        Returns (expired, reaped).
        """
        expired = reaped = 0
        now = self.clock.monotonic()
        async with self._index_lock:
            for tx in list(self._transactions.values()):
                if tx.state is TxState.ACTIVE and now >= tx.deadline:
                    self._expire(tx, now)
                    expired += 1
                elif (
                    tx.state.is_terminal
                    and tx.ended_at is not None
                    and now - tx.ended_at >= self.grace_seconds
                ):
                    del self._transactions[tx.id]
                    reaped += 1
        return expired, reaped

    def __len__(self) -> int:
        return len(self._transactions)
