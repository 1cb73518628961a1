"""Per-role RBAC cache.

Gate checks read under a shared guard. Probes happen outside any guard;
their result is swapped in under the exclusive guard in one assignment.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from dbconsole.access.models import RoleAccess
from dbconsole.core.locks import ReadWriteLock
from dbconsole.core.logging import get_logger

logger = get_logger(__name__)

AccessLoader = Callable[[], Awaitable[RoleAccess]]


class AccessCache:
    def __init__(self) -> None:
        self._entries: dict[str, RoleAccess] = {}
        self._lock = ReadWriteLock()
        self._probe_locks: dict[str, asyncio.Lock] = {}

    async def get(self, role: str) -> Optional[RoleAccess]:
        async with self._lock.read():
            return self._entries.get(role)

    async def put(self, access: RoleAccess) -> None:
        async with self._lock.write():
            self._entries[access.role] = access
        logger.info(
            "Access cache updated",
            data={"role": access.role, "databases": len(access.databases), "tables": len(access.tables)},
        )

    async def invalidate(self, role: str) -> None:
        async with self._lock.write():
            self._entries.pop(role, None)

    def _probe_lock(self, role: str) -> asyncio.Lock:
        lock = self._probe_locks.get(role)
        if lock is None:
            lock = self._probe_locks[role] = asyncio.Lock()
        return lock

    async def get_or_load(self, role: str, loader: AccessLoader) -> RoleAccess:
        """Return the cached view, probing once if there is none.

        Concurrent misses for the same role share a single probe.
        """
        access = await self.get(role)
        if access is not None:
            return access
        async with self._probe_lock(role):
            access = await self.get(role)
            if access is not None:
                return access
            access = await loader()
            await self.put(access)
            return access

    async def refresh(self, role: str, loader: AccessLoader) -> RoleAccess:
        """Discard the role's view and probe again."""
        await self.invalidate(role)
        return await self.get_or_load(role, loader)

    async def roles(self) -> list[str]:
        async with self._lock.read():
            return sorted(self._entries)
