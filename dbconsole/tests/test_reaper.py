"""Tests for the background reaper."""

import asyncio

import pytest

from dbconsole.access.models import TableRef
from dbconsole.tests.conftest import CREDENTIALS

USERS = TableRef("testdb", "public", "users")


class TestTransactionReaper:
    @pytest.fixture
    def reaper(self, console):
        return console.app.state.reaper

    @pytest.mark.asyncio
    async def test_quiet_sweep(self, console, reaper):
        stats = await reaper.run_once()
        assert stats == {"expired": 0, "reaped": 0, "sessions_purged": 0, "roles_released": 0}

    @pytest.mark.asyncio
    async def test_expires_transactions_and_releases_idle_roles(self, console, alice, reaper):
        await console.coordinator.start_transaction(alice, USERS)
        assert any(key[0] == "alice" for key in console.backend._engines)

        console.clock.advance(901)
        stats = await reaper.run_once()
        assert stats["expired"] == 1
        assert stats["sessions_purged"] == 1
        assert stats["roles_released"] == 1
        assert not any(key[0] == "alice" for key in console.backend._engines)

        console.clock.advance(30)
        assert (await reaper.run_once())["reaped"] == 1

    @pytest.mark.asyncio
    async def test_role_with_live_session_keeps_pools(self, console, reaper):
        await console.coordinator.login("alice", CREDENTIALS["alice"])
        console.clock.advance(600)
        await console.coordinator.login("alice", CREDENTIALS["alice"])
        console.clock.advance(300)
        stats = await reaper.run_once()
        assert stats["sessions_purged"] == 1
        assert stats["roles_released"] == 0
        assert any(key[0] == "alice" for key in console.backend._engines)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, console, reaper):
        await reaper.start()
        await asyncio.sleep(0)
        await reaper.start()
        await reaper.stop()
        await reaper.stop()
