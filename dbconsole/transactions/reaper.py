"""Background sweep for transaction leases and idle sessions."""

from __future__ import annotations

import asyncio
from typing import Optional

from dbconsole.auth.session import SessionRegistry
from dbconsole.core.logging import get_logger
from dbconsole.db.broker import ConnectionBroker
from dbconsole.transactions.manager import TransactionManager

logger = get_logger(__name__)


class TransactionReaper:
    """Periodically expires overdue transactions and purges dead sessions.

    When a role's last session goes away its connection pools are
    disposed, so idle roles do not hold backend connections.
    """

    def __init__(
        self,
        manager: TransactionManager,
        registry: SessionRegistry,
        broker: ConnectionBroker,
        *,
        interval_seconds: float,
    ):
        self.manager = manager
        self.registry = registry
        self.broker = broker
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="transaction-reaper")
        logger.info("Transaction reaper started", data={"interval": self.interval_seconds})

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Transaction reaper stopped")

    async def run_once(self) -> dict[str, int]:
        expired, reaped = await self.manager.sweep()
        purged = await self.registry.purge_expired()
        released = 0
        for username in sorted({session.username for session in purged}):
            if not await self.registry.has_sessions(username):
                await self.broker.dispose_role(username)
                released += 1
        stats = {
            "expired": expired,
            "reaped": reaped,
            "sessions_purged": len(purged),
            "roles_released": released,
        }
        if any(stats.values()):
            logger.info("Reaper sweep", data=stats)
        return stats

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Reaper iteration failed", data={"error": str(exc)}, exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
