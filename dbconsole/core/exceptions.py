"""Error kinds surfaced by the console core and their FastAPI handlers.

Every error carries a kind and a user-safe message. The underlying driver
exception, when there is one, travels in ``cause``: it is logged and never
serialised into a response.
"""

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from dbconsole.core.error_contract import build_error_envelope
from dbconsole.core.logging import current_request_id, get_logger

logger = get_logger(__name__)


class ErrorKind:
    """Stable error kind identifiers."""

    VALIDATION = "validation"
    AUTH = "auth"
    GATE_DENIED = "gate-denied"
    BACKEND_DENIED = "backend-denied"
    BACKEND_UNAVAILABLE = "backend-unavailable"
    BACKEND_ERROR = "backend-error"
    NOT_FOUND = "not-found"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    INTERNAL = "internal"


class ConsoleError(Exception):
    """Base exception for the console core."""

    kind = ErrorKind.INTERNAL
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "E5000"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message or self.default_message
        self.reason = reason
        self.details = details or {}
        self.cause = cause
        self.status_code = self.default_status
        self.code = self.default_code
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.kind}:{self.reason}: {self.message}"
        return f"{self.kind}: {self.message}"


class InputValidationError(ConsoleError):
    """Malformed input, rejected WHERE fragment, bad identifier."""

    kind = ErrorKind.VALIDATION
    default_status = status.HTTP_400_BAD_REQUEST
    default_code = "E4000"
    default_message = "Invalid request"


class AuthError(ConsoleError):
    """Login failed, cookie tampered or expired, session unknown."""

    kind = ErrorKind.AUTH
    default_status = status.HTTP_401_UNAUTHORIZED
    default_code = "E2000"
    default_message = "Authentication required"


class TamperedError(AuthError):
    """Sealed value failed its integrity check."""

    default_message = "Cookie integrity check failed"

    def __init__(self, message: Optional[str] = None, **kwargs: Any):
        kwargs.setdefault("reason", "cookie-tampered")
        super().__init__(message, **kwargs)


class StaleError(AuthError):
    """Sealed value is intact but older than its absolute lifetime."""

    default_message = "Cookie has expired"

    def __init__(self, message: Optional[str] = None, **kwargs: Any):
        kwargs.setdefault("reason", "cookie-stale")
        super().__init__(message, **kwargs)


class GateDeniedError(ConsoleError):
    """The cached RBAC view says the role may not do this."""

    kind = ErrorKind.GATE_DENIED
    default_status = status.HTTP_400_BAD_REQUEST
    default_code = "E2001"
    default_message = "Operation not permitted for this role"


class BackendDeniedError(ConsoleError):
    """The backend refused an operation the gate approved."""

    kind = ErrorKind.BACKEND_DENIED
    default_status = status.HTTP_403_FORBIDDEN
    default_code = "E2002"
    default_message = "The database denied this operation"


class BackendUnavailableError(ConsoleError):
    """Pool exhausted, network failure, or timeout."""

    kind = ErrorKind.BACKEND_UNAVAILABLE
    default_status = status.HTTP_502_BAD_GATEWAY
    default_code = "E3000"
    default_message = "The database is unavailable"


class BackendError(ConsoleError):
    """The backend rejected a statement for a non-permission reason."""

    kind = ErrorKind.BACKEND_ERROR
    default_status = status.HTTP_502_BAD_GATEWAY
    default_code = "E3001"
    default_message = "The database rejected the statement"


class NotFoundError(ConsoleError):
    """Unknown table, transaction, or constraint."""

    kind = ErrorKind.NOT_FOUND
    default_status = status.HTTP_404_NOT_FOUND
    default_code = "E4040"
    default_message = "Resource not found"


class ConflictError(ConsoleError):
    """Duplicate active transaction, stale row on commit, or busy transaction."""

    kind = ErrorKind.CONFLICT
    default_status = status.HTTP_409_CONFLICT
    default_code = "E4090"
    default_message = "Conflict"


class ExpiredError(ConsoleError):
    """Transaction deadline passed."""

    kind = ErrorKind.EXPIRED
    default_status = status.HTTP_408_REQUEST_TIMEOUT
    default_code = "E4080"
    default_message = "Transaction expired"


class InternalError(ConsoleError):
    """Invariant violation."""

    kind = ErrorKind.INTERNAL


def error_response(exc: ConsoleError) -> JSONResponse:
    """Render a ConsoleError as the canonical JSON envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_envelope(
            code=exc.code,
            kind=exc.kind,
            reason=exc.reason,
            message=exc.message,
            request_id=current_request_id(),
            extra=exc.details,
        ),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with FastAPI app."""

    @app.exception_handler(ConsoleError)
    async def console_exception_handler(request: Request, exc: ConsoleError) -> JSONResponse:
        """Handle console core errors."""
        log_data = {"kind": exc.kind, "reason": exc.reason, "status_code": exc.status_code}
        if exc.cause is not None:
            log_data["cause"] = f"{type(exc.cause).__name__}: {exc.cause}"
        if isinstance(exc, InternalError):
            logger.error(f"Internal error: {exc.message}", data=log_data, exc_info=exc.cause or exc)
        elif exc.status_code >= 500:
            logger.error(f"Backend error: {exc.message}", data=log_data)
        else:
            logger.info(f"Request rejected: {exc.message}", data=log_data)

        response = error_response(exc)
        clear_cookies = getattr(request.state, "clear_auth_cookies", None)
        if isinstance(exc, AuthError) and clear_cookies is not None:
            clear_cookies(response)
        return response

    @app.exception_handler(RequestValidationError)
    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle request body and Pydantic validation errors."""
        errors = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
        logger.warning("Validation error", data={"errors": errors})
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=build_error_envelope(
                code="E4000",
                kind=ErrorKind.VALIDATION,
                reason=None,
                message="Validation error",
                request_id=current_request_id(),
                extra={"errors": errors},
            ),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=build_error_envelope(
                code=f"E{exc.status_code}0",
                kind=None,
                reason=None,
                message=str(exc.detail),
                request_id=current_request_id(),
            ),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {exc}",
            exc_info=True,
        )
        return error_response(InternalError())
