"""
Database console application.

FastAPI application wiring the session registry, access cache, connection
broker and transaction manager behind one request coordinator.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Optional

from fastapi import FastAPI

from dbconsole import __version__
from dbconsole.access.cache import AccessCache
from dbconsole.access.gate import RbacGate
from dbconsole.api import auth_router, data_router, health_router, transactions_router
from dbconsole.auth.session import SessionRegistry
from dbconsole.config import Settings, get_settings
from dbconsole.core import (
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
    get_logger,
    setup_exception_handlers,
    setup_logging,
)
from dbconsole.core.clock import Clock
from dbconsole.core.startup_checks import run_startup_validations
from dbconsole.db.backend import Backend, SqlAlchemyBackend
from dbconsole.db.broker import ConnectionBroker
from dbconsole.db.catalog import CatalogProbe
from dbconsole.security.sealer import CookieSealer
from dbconsole.services.coordinator import RequestCoordinator
from dbconsole.transactions.manager import TransactionManager
from dbconsole.transactions.reaper import TransactionReaper

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = _app.state.settings

    # Startup
    setup_logging(
        level=settings.log_level,
        json_output=not settings.debug,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting database console",
        data={
            "host": settings.host,
            "port": settings.port,
            "environment": settings.environment,
            "default_database": settings.default_database,
        },
    )

    run_startup_validations(settings)

    _app.state.start_time = datetime.now(UTC)
    await _app.state.reaper.start()

    yield

    # Shutdown
    logger.info("Shutting down database console")
    await _app.state.reaper.stop()
    await _app.state.broker.close()


def create_app(
    settings: Optional[Settings] = None,
    *,
    backend: Optional[Backend] = None,
    probe: Optional[CatalogProbe] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``backend``, ``probe`` and ``clock`` default to the PostgreSQL backend,
    the catalog probe and the real clock; tests substitute their own.
    """
    settings = settings or get_settings()
    clock = clock or Clock()

    app = FastAPI(
        title="DB Console",
        description="Multi-user web console for a role-secured database",
        version=__version__,
        lifespan=lifespan,
    )

    sealer = CookieSealer(
        settings.cookie_key_bytes,
        max_age_seconds=settings.identity_cookie_absolute_timeout_seconds,
        clock_skew_seconds=settings.cookie_clock_skew_seconds,
        clock=clock,
    )
    registry = SessionRegistry(
        sealer,
        idle_timeout_seconds=settings.session_idle_timeout_seconds,
        absolute_timeout_seconds=settings.session_absolute_timeout_seconds,
        identity_timeout_seconds=settings.identity_cookie_absolute_timeout_seconds,
        clock=clock,
    )
    backend = backend or SqlAlchemyBackend(
        settings.backend_url,
        per_role_max=settings.pool_per_role_max,
        pool_timeout=settings.operation_timeout_seconds,
    )
    broker = ConnectionBroker(
        backend, sealer, operation_timeout_seconds=settings.operation_timeout_seconds
    )
    cache = AccessCache()
    gate = RbacGate(cache)
    transactions = TransactionManager(
        gate,
        broker,
        lease_seconds=settings.transaction_lease_seconds,
        grace_seconds=settings.transaction_reap_grace_seconds,
        max_ops=settings.transaction_max_ops,
        clock=clock,
    )

    app.state.settings = settings
    app.state.session_registry = registry
    app.state.broker = broker
    app.state.coordinator = RequestCoordinator(
        settings,
        registry=registry,
        cache=cache,
        gate=gate,
        broker=broker,
        probe=probe or CatalogProbe(clock),
        transactions=transactions,
    )
    app.state.reaper = TransactionReaper(
        transactions,
        registry,
        broker,
        interval_seconds=settings.transaction_sweep_interval_seconds,
    )

    # Setup exception handlers (must be before middleware)
    setup_exception_handlers(app)

    # Add middleware (order matters - last added = first executed)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    # Register routers
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(data_router)
    app.include_router(transactions_router)

    return app


def run() -> None:
    """Console-script entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "dbconsole.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
