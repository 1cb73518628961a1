"""Shared fixtures: settings, a manual clock and a SQLite-backed console."""

import base64
from dataclasses import dataclass

import pytest
import pytest_asyncio
from fastapi import FastAPI

from dbconsole.config import Settings
from dbconsole.core.clock import ManualClock
from dbconsole.main import create_app
from dbconsole.services.coordinator import RequestCoordinator
from dbconsole.tests.fakes import SqliteBackend, StaticProbe, role_access, table

TEST_COOKIE_KEY = base64.urlsafe_b64encode(b"k" * 32).decode("ascii")

USERS_COLUMNS = ("id", "name", "email")

CREDENTIALS = {
    "alice": "alice-pw",
    "bob": "bob-pw",
    "noone": "noone-pw",
}


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "backend_url": "sqlite+aiosqlite:///{database}",
        "default_database": "testdb",
        "cookie_key": TEST_COOKIE_KEY,
        "transaction_lease_seconds": 60,
        "transaction_reap_grace_seconds": 30,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@dataclass
class Console:
    app: FastAPI
    settings: Settings
    clock: ManualClock
    backend: SqliteBackend
    probe: StaticProbe

    @property
    def coordinator(self) -> RequestCoordinator:
        return self.app.state.coordinator


def default_views() -> StaticProbe:
    return StaticProbe(
        {
            "alice": role_access("alice", table("users", USERS_COLUMNS, privileges="SIUD")),
            "bob": role_access("bob", table("users", USERS_COLUMNS, privileges="S")),
        }
    )


def build_console(tmp_path, **setting_overrides) -> Console:
    settings = make_settings(**setting_overrides)
    clock = ManualClock()
    backend = SqliteBackend(tmp_path, CREDENTIALS)
    backend.script(
        "testdb",
        "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, email TEXT);",
    )
    backend.insert_many(
        "testdb",
        "INSERT INTO users (id, name, email) VALUES (?, ?, ?)",
        [(i, f"user{i}", f"user{i}@example.com") for i in range(1, 11)],
    )
    probe = default_views()
    app = create_app(settings, backend=backend, probe=probe, clock=clock)
    return Console(app=app, settings=settings, clock=clock, backend=backend, probe=probe)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def console(tmp_path):
    """A fully wired console over SQLite with users 1..10 in testdb.public.users."""
    built = build_console(tmp_path)
    yield built
    await built.backend.dispose()


@pytest_asyncio.fixture
async def alice(console):
    """A logged-in session for alice (SIUD on users)."""
    result = await console.coordinator.login("alice", CREDENTIALS["alice"])
    return result.session
