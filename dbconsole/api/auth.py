"""Authentication API endpoints."""

from fastapi import APIRouter, Depends, Request, Response

from dbconsole.api.schemas import LoginRequest
from dbconsole.auth.dependencies import arm_auth_cookies, get_coordinator, get_current_session
from dbconsole.auth.session import Session
from dbconsole.security.cookies import clear_auth_cookies, set_auth_cookies
from dbconsole.services.coordinator import RequestCoordinator

router = APIRouter(prefix="/api/auth", tags=["auth"])

# Session material must never land in a browser or proxy cache
_AUTH_CACHE_CONTROL = "no-store, no-cache, must-revalidate, private"
_AUTH_PRAGMA = "no-cache"


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = _AUTH_CACHE_CONTROL
    response.headers["Pragma"] = _AUTH_PRAGMA


@router.post("/login", dependencies=[Depends(arm_auth_cookies)])
async def login(
    payload: LoginRequest,
    response: Response,
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    """Authenticate against the database and start a session."""
    _no_store(response)
    result = await coordinator.login(payload.username, payload.password)
    set_auth_cookies(
        response,
        coordinator.settings,
        session_token=result.cookies.session_token,
        identity_token=result.cookies.identity_token,
    )
    return result.to_dict()


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    """End the session. Safe to call repeatedly or without a session."""
    _no_store(response)
    settings = coordinator.settings
    session_id = coordinator.registry.peek_session_id(
        request.cookies.get(settings.session_cookie_name)
    )
    await coordinator.logout(session_id)
    clear_auth_cookies(response, settings)
    return {"status": "ok"}


@router.post("/refresh")
async def refresh(
    response: Response,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    """Rotate the session id and reissue the session cookie."""
    _no_store(response)
    rotated, token = await coordinator.refresh_session(session)
    set_auth_cookies(response, coordinator.settings, session_token=token)
    return {"status": "ok", "username": rotated.username}


@router.get("/me")
async def me(response: Response, session: Session = Depends(get_current_session)):
    _no_store(response)
    return {"username": session.username}
