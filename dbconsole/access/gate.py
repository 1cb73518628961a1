"""RBAC Gate: answers "may this role do this?" from the cache alone.

The gate is advisory. It keeps the UI from offering what will fail and
rejects obviously forbidden requests early; the backend's own checks
remain the authority and their denials surface as backend-denied.
"""

from __future__ import annotations

from typing import Optional, Union

from dbconsole.access.cache import AccessCache, AccessLoader
from dbconsole.access.models import Operation, RoleAccess, TableAccess, TableRef
from dbconsole.core.exceptions import GateDeniedError, InternalError
from dbconsole.core.logging import get_logger

logger = get_logger(__name__)

# A database name, a (database, schema) pair, or a table.
Target = Union[str, tuple[str, str], TableRef]


def check(access: RoleAccess, op: Operation, target: Target) -> bool:
    """Pure decision against one RoleAccess snapshot."""
    if isinstance(target, TableRef):
        table = access.table(target)
        if table is None:
            return False
        if op in (Operation.CONNECT, Operation.USAGE):
            return True
        return table.privileges.allows(op)
    if isinstance(target, tuple):
        database, schema = target
        return op is Operation.USAGE and access.has_schema(database, schema)
    return op is Operation.CONNECT and access.has_database(target)


def _describe(target: Target) -> str:
    if isinstance(target, TableRef):
        return target.qualified
    if isinstance(target, tuple):
        return ".".join(target)
    return target


class RbacGate:
    def __init__(self, cache: AccessCache):
        self.cache = cache

    async def access_for(self, role: str, loader: Optional[AccessLoader] = None) -> RoleAccess:
        if loader is not None:
            return await self.cache.get_or_load(role, loader)
        access = await self.cache.get(role)
        if access is None:
            raise InternalError("No access information cached for role")
        return access

    async def may_do(
        self, role: str, op: Operation, target: Target, *, loader: Optional[AccessLoader] = None
    ) -> bool:
        if loader is None:
            access = await self.cache.get(role)
            if access is None:
                return False
        else:
            access = await self.cache.get_or_load(role, loader)
        return check(access, op, target)

    async def require(
        self, role: str, op: Operation, target: Target, *, loader: Optional[AccessLoader] = None
    ) -> RoleAccess:
        """Raise GateDeniedError unless the role may do ``op`` on ``target``."""
        access = await self.access_for(role, loader)
        if not check(access, op, target):
            logger.info(
                "Gate denied operation",
                data={"role": role, "operation": op.value, "target": _describe(target)},
            )
            raise GateDeniedError(
                f"Role may not {op.value} {_describe(target)}",
                details={"operation": op.value, "target": _describe(target)},
            )
        return access

    async def require_table(
        self, role: str, op: Operation, target: TableRef, *, loader: Optional[AccessLoader] = None
    ) -> TableAccess:
        access = await self.require(role, op, target, loader=loader)
        table = access.table(target)
        if table is None:
            raise InternalError("Gate approved a table missing from the access view")
        return table
