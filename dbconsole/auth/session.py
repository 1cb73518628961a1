"""Session Registry.

A session is created on login and referenced by a sealed session cookie.
It holds the user's password sealed under the process key so each request
can open connections as that user. A session ends on logout, after the
idle timeout, or at its absolute expiry, whichever comes first. Activity
moves the idle deadline but never the absolute one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from dbconsole.core.clock import Clock, new_id
from dbconsole.core.exceptions import AuthError, TamperedError
from dbconsole.core.logging import get_logger
from dbconsole.security.sealer import CookiePayload, CookieSealer, decode_token, encode_token

logger = get_logger(__name__)


@dataclass
class Session:
    id: str
    username: str
    sealed_password: bytes
    created_at: float
    last_seen_at: float
    absolute_expiry: float

    def idle_expiry(self, idle_timeout: float) -> float:
        return self.last_seen_at + idle_timeout

    def is_expired(self, now: float, idle_timeout: float) -> bool:
        return now >= self.absolute_expiry or now >= self.idle_expiry(idle_timeout)

    @property
    def short_id(self) -> str:
        return self.id[:8]


@dataclass(frozen=True)
class IssuedCookies:
    session_token: str
    identity_token: Optional[str] = None


class SessionRegistry:
    def __init__(
        self,
        sealer: CookieSealer,
        *,
        idle_timeout_seconds: float,
        absolute_timeout_seconds: float,
        identity_timeout_seconds: float,
        clock: Optional[Clock] = None,
    ):
        self.sealer = sealer
        self.idle_timeout_seconds = idle_timeout_seconds
        self.absolute_timeout_seconds = absolute_timeout_seconds
        self.identity_timeout_seconds = identity_timeout_seconds
        self.clock = clock or Clock()
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def _session_token(self, session: Session) -> str:
        payload = self.sealer.new_payload("session", session.username, session_id=session.id)
        return encode_token(self.sealer.seal(payload))

    def _identity_token(self, session: Session) -> str:
        payload = self.sealer.new_payload(
            "identity", session.username, sealed_password=session.sealed_password
        )
        return encode_token(self.sealer.seal(payload))

    async def create(self, username: str, password: str) -> tuple[Session, IssuedCookies]:
        """Start a session for credentials the backend has already accepted."""
        now = self.clock.monotonic()
        session = Session(
            id=new_id(),
            username=username,
            sealed_password=self.sealer.seal_secret(password),
            created_at=now,
            last_seen_at=now,
            absolute_expiry=now + self.absolute_timeout_seconds,
        )
        async with self._lock:
            self._sessions[session.id] = session
        logger.info("Session created", data={"username": username, "session_ref": session.short_id})
        return session, IssuedCookies(
            session_token=self._session_token(session),
            identity_token=self._identity_token(session),
        )

    def _open(self, token: str, kind: str, max_age: float) -> CookiePayload:
        payload = self.sealer.open(decode_token(token), max_age_seconds=max_age)
        if payload.kind != kind:
            raise TamperedError(f"Expected a {kind} cookie")
        return payload

    async def validate(self, session_token: str) -> Session:
        """Resolve a session cookie and refresh the session's idle deadline."""
        payload = self._open(session_token, "session", self.absolute_timeout_seconds)
        now = self.clock.monotonic()
        async with self._lock:
            session = self._sessions.get(payload.session_id or "")
            if session is None:
                raise AuthError("Session not found", reason="session-unknown")
            if session.username != payload.username:
                raise TamperedError()
            if session.is_expired(now, self.idle_timeout_seconds):
                del self._sessions[session.id]
                logger.info(
                    "Session expired",
                    data={"username": session.username, "session_ref": session.short_id},
                )
                raise AuthError("Session expired", reason="session-expired")
            session.last_seen_at = now
            return session

    def peek_session_id(self, session_token: Optional[str]) -> Optional[str]:
        """Session id from a cookie, or None if the cookie does not open."""
        if not session_token:
            return None
        try:
            return self._open(session_token, "session", self.absolute_timeout_seconds).session_id
        except AuthError:
            return None

    def open_identity(self, identity_token: str) -> tuple[str, str]:
        """Recover (username, password) from an identity cookie."""
        payload = self._open(identity_token, "identity", self.identity_timeout_seconds)
        return payload.username, self.sealer.open_payload_secret(payload)

    async def rotate(self, session_id: str) -> tuple[Session, str]:
        """Replace a session's id; the old cookie stops working."""
        async with self._lock:
            old = self._sessions.pop(session_id, None)
            if old is None:
                raise AuthError("Session not found", reason="session-unknown")
            session = Session(
                id=new_id(),
                username=old.username,
                sealed_password=old.sealed_password,
                created_at=old.created_at,
                last_seen_at=self.clock.monotonic(),
                absolute_expiry=old.absolute_expiry,
            )
            self._sessions[session.id] = session
        return session, self._session_token(session)

    async def destroy(self, session_id: Optional[str]) -> Optional[Session]:
        """End a session. Unknown or already-ended sessions are ignored."""
        if not session_id:
            return None
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info(
                "Session ended", data={"username": session.username, "session_ref": session.short_id}
            )
        return session

    async def purge_expired(self) -> list[Session]:
        now = self.clock.monotonic()
        async with self._lock:
            expired = [
                s for s in self._sessions.values() if s.is_expired(now, self.idle_timeout_seconds)
            ]
            for session in expired:
                del self._sessions[session.id]
        return expired

    async def has_sessions(self, username: str) -> bool:
        async with self._lock:
            return any(s.username == username for s in self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)
