"""Role access model, cache and gate."""

from dbconsole.access.cache import AccessCache
from dbconsole.access.gate import RbacGate, check
from dbconsole.access.models import (
    ColumnInfo,
    DatabaseCatalog,
    ForeignKey,
    Operation,
    PrivilegeSet,
    RoleAccess,
    TableAccess,
    TableRef,
)

__all__ = [
    "AccessCache",
    "RbacGate",
    "check",
    "ColumnInfo",
    "DatabaseCatalog",
    "ForeignKey",
    "Operation",
    "PrivilegeSet",
    "RoleAccess",
    "TableAccess",
    "TableRef",
]
