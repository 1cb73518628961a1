"""Session and identity cookie helpers for HTTP responses."""

from typing import Optional

from fastapi import Response

from dbconsole.config import Settings


def _set(response: Response, settings: Settings, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=name,
        value=value,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite_header,
        domain=settings.cookie_domain or None,
        path="/",
        max_age=max_age,
    )


def set_auth_cookies(
    response: Response,
    settings: Settings,
    *,
    session_token: str,
    identity_token: Optional[str] = None,
) -> None:
    """Write the session cookie and, when given, the identity cookie."""
    _set(
        response,
        settings,
        settings.session_cookie_name,
        session_token,
        settings.session_absolute_timeout_seconds,
    )
    if identity_token is not None:
        _set(
            response,
            settings,
            settings.identity_cookie_name,
            identity_token,
            settings.identity_cookie_absolute_timeout_seconds,
        )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    """Delete both cookies; any auth failure forces a fresh login."""
    for name in (settings.session_cookie_name, settings.identity_cookie_name):
        response.delete_cookie(
            name,
            domain=settings.cookie_domain or None,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite_header,
        )
