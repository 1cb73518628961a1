"""Translate driver exceptions into console error kinds."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from dbconsole.core.exceptions import (
    AuthError,
    BackendDeniedError,
    BackendError,
    BackendUnavailableError,
    ConsoleError,
    NotFoundError,
)

# SQLSTATE classes, see PostgreSQL Appendix A.
INVALID_AUTHORIZATION_CLASS = "28"
CONNECTION_EXCEPTION_CLASS = "08"
INSUFFICIENT_RESOURCES_CLASS = "53"
OPERATOR_INTERVENTION_CLASS = "57"
INSUFFICIENT_PRIVILEGE = "42501"
INVALID_CATALOG_NAME = "3D000"
UNDEFINED_TABLE = "42P01"


def sqlstate_of(exc: BaseException) -> Optional[str]:
    """Find the SQLSTATE on a wrapped driver exception, if any."""
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None), exc):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def _driver_message(exc: BaseException) -> str:
    source = getattr(exc, "orig", None) or exc
    message = str(source).strip()
    return message.splitlines()[0] if message else type(source).__name__


def translate_db_error(exc: BaseException) -> ConsoleError:
    """Map a driver or pool exception onto the console's error kinds.

    The returned error keeps the original exception as ``cause``; callers
    raise it ``from exc``.
    """
    if isinstance(exc, ConsoleError):
        return exc

    if isinstance(exc, PoolTimeoutError):
        return BackendUnavailableError("Connection pool exhausted", reason="unavailable", cause=exc)

    code = sqlstate_of(exc)
    if code:
        if code.startswith(INVALID_AUTHORIZATION_CLASS):
            return AuthError("Invalid username or password", reason="invalid-credentials", cause=exc)
        if code == INSUFFICIENT_PRIVILEGE:
            return BackendDeniedError(_driver_message(exc), cause=exc)
        if code == INVALID_CATALOG_NAME:
            return NotFoundError("Database does not exist", cause=exc)
        if code.startswith(
            (CONNECTION_EXCEPTION_CLASS, INSUFFICIENT_RESOURCES_CLASS, OPERATOR_INTERVENTION_CLASS)
        ):
            return BackendUnavailableError(reason="unavailable", cause=exc)
        return BackendError(_driver_message(exc), details={"sqlstate": code}, cause=exc)

    if isinstance(exc, (OSError, ConnectionError)):
        return BackendUnavailableError(reason="unavailable", cause=exc)
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return BackendUnavailableError(reason="unavailable", cause=exc)
    if isinstance(exc, SQLAlchemyError):
        return BackendError(_driver_message(exc), cause=exc)
    return BackendError(cause=exc)
