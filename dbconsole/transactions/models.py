"""Transaction and staged-operation models."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Union

from dbconsole.access.models import Operation, TableRef


class TxState(str, Enum):
    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (TxState.COMMITTED, TxState.ROLLED_BACK, TxState.EXPIRED)


class OpKind(str, Enum):
    UPDATE_CELL = "update-cell"
    DELETE_ROW = "delete-row"
    INSERT_ROW = "insert-row"


REQUIRED_PRIVILEGE = {
    OpKind.UPDATE_CELL: Operation.UPDATE,
    OpKind.DELETE_ROW: Operation.DELETE,
    OpKind.INSERT_ROW: Operation.INSERT,
}


@dataclass(frozen=True)
class RowKey:
    """Primary-key values identifying an existing row, in key order."""

    items: tuple[tuple[str, Any], ...]

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], primary_key: Sequence[str]) -> "RowKey":
        return cls(tuple((column, values[column]) for column in primary_key))

    def as_dict(self) -> dict[str, Any]:
        return dict(self.items)


@dataclass(frozen=True)
class NewRow:
    """Handle for a row that only exists as a staged insert."""

    token: str


RowRef = Union[RowKey, NewRow]


@dataclass(frozen=True)
class OpSpec:
    """A caller's request to stage an operation, before validation.

    ``row_key`` names an existing row by primary key; ``new_row`` names a
    row staged by an earlier insert in the same transaction.
    """

    kind: OpKind
    row_key: Optional[Mapping[str, Any]] = None
    new_row: Optional[str] = None
    column: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    values: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class StagedOp:
    id: str
    kind: OpKind
    target: TableRef
    row: RowRef
    created_at: float
    column: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    values: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "target": self.target.to_dict(),
        }
        if isinstance(self.row, NewRow):
            data["new_row"] = self.row.token
        else:
            data["row_key"] = self.row.as_dict()
        if self.kind is OpKind.UPDATE_CELL:
            data.update(column=self.column, old_value=self.old_value, new_value=self.new_value)
        elif self.kind is OpKind.INSERT_ROW:
            data["values"] = dict(self.values)
        return data


@dataclass
class Transaction:
    """A user's pending batch of edits against one table.

    ``lock`` serialises staging and commit for this transaction only.
    """

    id: str
    owner: str
    target: TableRef
    started_at: float
    deadline: float
    state: TxState = TxState.ACTIVE
    ops: list[StagedOp] = field(default_factory=list)
    ended_at: Optional[float] = None
    flagged_ops: set[str] = field(default_factory=set)
    last_error: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def remaining(self, now: float) -> float:
        if self.state.is_terminal:
            return 0.0
        return max(0.0, self.deadline - now)

    def counts(self) -> dict[str, int]:
        counts = {kind.value: 0 for kind in OpKind}
        for op in self.ops:
            counts[op.kind.value] += 1
        return counts

    def pending_inserts(self) -> set[str]:
        live: set[str] = set()
        for op in self.ops:
            if not isinstance(op.row, NewRow):
                continue
            if op.kind is OpKind.INSERT_ROW:
                live.add(op.row.token)
            elif op.kind is OpKind.DELETE_ROW:
                live.discard(op.row.token)
        return live

    def is_deleted(self, row: RowRef) -> bool:
        return any(op.kind is OpKind.DELETE_ROW and op.row == row for op in self.ops)

    def status(self, now: float) -> dict[str, Any]:
        counts = self.counts()
        return {
            "id": self.id,
            "state": self.state.value,
            "target": self.target.to_dict(),
            "operations": len(self.ops),
            "updates": counts[OpKind.UPDATE_CELL.value],
            "deletes": counts[OpKind.DELETE_ROW.value],
            "inserts": counts[OpKind.INSERT_ROW.value],
            "started_at": self.started_at,
            "deadline": self.deadline,
            "remaining_seconds": round(self.remaining(now), 3),
            "flagged_ops": sorted(self.flagged_ops),
            "last_error": self.last_error,
        }
