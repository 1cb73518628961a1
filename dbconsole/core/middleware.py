"""HTTP middleware: per-request log context and response hardening."""

import re
import secrets
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from dbconsole.core.logging import bind_request, get_logger, request_context

logger = get_logger(__name__)

# Caller-supplied ids are echoed back, so only short opaque tokens are trusted
_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

_QUIET_PATHS = frozenset({"/health"})


def _request_id_for(request: Request) -> str:
    supplied = request.headers.get("X-Request-ID", "")
    if _REQUEST_ID.match(supplied):
        return supplied
    return secrets.token_hex(8)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id to every log record and echo it to the client."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _request_id_for(request)
        token = bind_request(request_id, request.method, request.url.path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            log = logger.debug if request.url.path in _QUIET_PATHS else logger.info
            log(
                "%s %s -> %s",
                request.method,
                request.url.path,
                response.status_code,
                data={"duration_ms": elapsed_ms},
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_context.reset(token)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Refuse framing and MIME sniffing on every response.

    Table contents are user data, so the browser must never reinterpret a
    response or render it inside another origin's frame.
    """

    HEADERS = (
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
        ("Referrer-Policy", "no-referrer"),
        ("Permissions-Policy", "camera=(), microphone=(), geolocation=()"),
    )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in self.HEADERS:
            response.headers.setdefault(name, value)
        return response
