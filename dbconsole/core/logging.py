"""Logging for the console.

Every record is stamped with the current request id and, once the session
has been resolved, the database role acting for that request. Fields passed
through ``data=`` are scrubbed before formatting: passwords, sealed secrets,
cookie values and credentials embedded in connection URLs never reach a
handler.
"""

import json
import logging
import re
import sys
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any, Dict, Optional, Tuple

request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

# Keys whose values are secrets whatever their shape
SECRET_FIELDS = frozenset(
    {
        "password",
        "sealed_password",
        "secret",
        "cookie_key",
        "session",
        "identity",
        "authorization",
        "x-api-key",
    }
)

COOKIE_FIELDS = frozenset({"cookie", "set-cookie"})

# Set-Cookie attributes are kept readable; only cookie values are masked
_COOKIE_ATTRIBUTES = frozenset({"path", "domain", "expires", "max-age", "samesite"})

_URL_CREDENTIALS = re.compile(r"(?P<head>[a-z][a-z0-9+.-]*://[^:/@\s]+:)[^@\s]*@", re.IGNORECASE)

_MASK = "<REDACTED>"


def bind_request(request_id: str, method: str, path: str) -> Token:
    """Open a logging context for one HTTP request."""
    return request_context.set({"request_id": request_id, "method": method, "path": path})


def bind_role(role: str) -> None:
    """Attach the acting role to the current request's log records."""
    ctx = dict(request_context.get())
    ctx["role"] = role
    request_context.set(ctx)


def current_request_id() -> Optional[str]:
    return request_context.get().get("request_id")


def _mask_secret(value: Any) -> str:
    # Long values keep three characters at each end for correlation
    if not isinstance(value, str):
        return "[REDACTED]"
    if len(value) < 12:
        return _MASK
    return f"{value[:3]}***{value[-3:]}"


def _mask_cookie_string(value: str) -> str:
    parts = []
    for part in value.split(";"):
        name, sep, _ = part.strip().partition("=")
        if sep and name.lower() not in _COOKIE_ATTRIBUTES:
            parts.append(f"{name}={_MASK}")
        else:
            parts.append(part.strip())
    return "; ".join(parts)


def _scrub_url_credentials(value: str) -> str:
    if "://" not in value:
        return value
    return _URL_CREDENTIALS.sub(lambda m: f"{m.group('head')}{_MASK}@", value)


def redact_sensitive_data(data: Any) -> Any:
    """Return a copy of ``data`` that is safe to log.

    Dictionaries, lists and tuples are walked. Secret fields are masked,
    cookie headers keep their names but lose their values, and any string
    containing ``scheme://user:password@`` has the password removed.
    """
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            field = str(key).lower()
            if field in COOKIE_FIELDS:
                cleaned[key] = _mask_cookie_string(value) if isinstance(value, str) else "[REDACTED]"
            elif field in SECRET_FIELDS:
                cleaned[key] = _mask_secret(value)
            else:
                cleaned[key] = redact_sensitive_data(value)
        return cleaned
    if isinstance(data, list):
        return [redact_sensitive_data(item) for item in data]
    if isinstance(data, tuple):
        return tuple(redact_sensitive_data(item) for item in data)
    if isinstance(data, str):
        return _scrub_url_credentials(data)
    return data


def _context_fields() -> Dict[str, Any]:
    ctx = request_context.get()
    return {key: ctx[key] for key in ("request_id", "path", "role") if ctx.get(key)}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": _scrub_url_credentials(record.getMessage()),
        }
        entry.update(_context_fields())

        data = getattr(record, "data", None)
        if data:
            entry["data"] = redact_sensitive_data(data)
        if record.exc_info:
            entry["exception"] = _scrub_url_credentials(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line coloured output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ctx = _context_fields()
        prefix = " ".join(
            [
                datetime.now(UTC).strftime("%H:%M:%S"),
                f"{color}{record.levelname:<8}{self.RESET}",
                ctx.get("request_id", "-")[:8],
                ctx.get("role", "-"),
                record.name,
            ]
        )
        line = f"{prefix} | {_scrub_url_credentials(record.getMessage())}"

        data = getattr(record, "data", None)
        if data:
            line += f" {redact_sensitive_data(data)}"
        if record.exc_info:
            line += "\n" + _scrub_url_credentials(self.formatException(record.exc_info))
        return line


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that accepts a ``data=`` mapping of structured fields."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        if "data" in kwargs:
            extra["data"] = kwargs.pop("data")
        kwargs["extra"] = extra
        return msg, kwargs


_loggers: Dict[str, ContextLogger] = {}


def get_logger(name: str) -> ContextLogger:
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers[name] = ContextLogger(logging.getLogger(name), {})
    return logger


# Driver and server loggers that are noisy at INFO
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "sqlalchemy.pool", "asyncpg", "aiosqlite")


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Install handlers on the root logger, replacing any already present.

    ``log_file`` always receives JSON so it can be shipped as is.
    """
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(StructuredFormatter() if json_output else ConsoleFormatter())
    handlers: list = [stream]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=level.upper(), handlers=handlers, force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
