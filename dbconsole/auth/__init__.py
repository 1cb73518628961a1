"""Sessions and request authentication."""

from dbconsole.auth.session import IssuedCookies, Session, SessionRegistry

__all__ = ["IssuedCookies", "Session", "SessionRegistry"]
