"""Staged edits and their atomic commit."""

from dbconsole.transactions.manager import Credentials, TransactionManager
from dbconsole.transactions.models import (
    NewRow,
    OpKind,
    OpSpec,
    RowKey,
    StagedOp,
    Transaction,
    TxState,
)

__all__ = [
    "Credentials",
    "TransactionManager",
    "NewRow",
    "OpKind",
    "OpSpec",
    "RowKey",
    "StagedOp",
    "Transaction",
    "TxState",
]
