"""Core module with logging, middleware, and exception handling."""

from dbconsole.core.exceptions import setup_exception_handlers
from dbconsole.core.logging import get_logger, setup_logging
from dbconsole.core.middleware import RequestContextMiddleware, SecurityHeadersMiddleware

__all__ = [
    "get_logger",
    "setup_logging",
    "RequestContextMiddleware",
    "SecurityHeadersMiddleware",
    "setup_exception_handlers",
]
