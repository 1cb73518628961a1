"""Backend connection layer."""

from dbconsole.db.backend import (
    Backend,
    Connection,
    QueryRows,
    SqlAlchemyBackend,
    SqlAlchemyConnection,
)
from dbconsole.db.broker import ConnectionBroker
from dbconsole.db.catalog import CatalogProbe
from dbconsole.db.errors import translate_db_error

__all__ = [
    "Backend",
    "Connection",
    "QueryRows",
    "SqlAlchemyBackend",
    "SqlAlchemyConnection",
    "ConnectionBroker",
    "CatalogProbe",
    "translate_db_error",
]
