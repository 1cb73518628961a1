"""HTTP routers."""

from dbconsole.api.auth import router as auth_router
from dbconsole.api.data import router as data_router
from dbconsole.api.health import router as health_router
from dbconsole.api.transactions import router as transactions_router

__all__ = ["auth_router", "data_router", "health_router", "transactions_router"]
