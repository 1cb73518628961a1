"""FastAPI dependencies for authentication."""

from fastapi import Depends, Request, Response

from dbconsole.auth.session import Session
from dbconsole.core.exceptions import AuthError, TamperedError
from dbconsole.core.logging import bind_role, get_logger
from dbconsole.security.cookies import clear_auth_cookies, set_auth_cookies
from dbconsole.services.coordinator import RequestCoordinator

logger = get_logger(__name__)


def get_coordinator(request: Request) -> RequestCoordinator:
    return request.app.state.coordinator


def _arm_cookie_clearing(request: Request, coordinator: RequestCoordinator) -> None:
    # The exception handler clears both cookies on any auth failure.
    settings = coordinator.settings
    request.state.clear_auth_cookies = lambda response: clear_auth_cookies(response, settings)


async def get_current_session(
    request: Request,
    response: Response,
    coordinator: RequestCoordinator = Depends(get_coordinator),
) -> Session:
    """Resolve the caller's session.

    A missing or expired session falls back to the identity cookie, which
    re-authenticates against the backend and issues a fresh session
    cookie. A tampered cookie never falls back.

    Raises:
        AuthError: If no usable session or identity cookie is present.
    """
    _arm_cookie_clearing(request, coordinator)
    settings = coordinator.settings
    session_token = request.cookies.get(settings.session_cookie_name)
    identity_token = request.cookies.get(settings.identity_cookie_name)

    if session_token:
        try:
            session = await coordinator.authenticate(session_token)
            bind_role(session.username)
            return session
        except TamperedError:
            raise
        except AuthError as exc:
            if not identity_token:
                raise
            logger.info("Session rejected, resuming from identity cookie", data={"reason": exc.reason})

    if not identity_token:
        raise AuthError("Not authenticated", reason="no-session")

    result = await coordinator.resume(identity_token)
    set_auth_cookies(response, settings, session_token=result.cookies.session_token)
    bind_role(result.session.username)
    return result.session


async def arm_auth_cookies(
    request: Request,
    coordinator: RequestCoordinator = Depends(get_coordinator),
) -> None:
    """For routes that authenticate without a session, such as login."""
    _arm_cookie_clearing(request, coordinator)
