"""Cookie sealing with an authenticated symmetric construction.

Sealed values are XSalsa20-Poly1305 boxes (``nacl.secret.SecretBox``): a
fresh random 24-byte nonce per seal, then ciphertext and a Poly1305 tag.
Any single-bit change makes ``open`` fail with ``TamperedError``.

Two subkeys are derived from the process key, one for cookie payloads
and one for sealed passwords, so a sealed password can never be replayed
as a cookie or the other way round.
"""

from __future__ import annotations

import base64
import binascii
from typing import Literal, Optional

from nacl.encoding import RawEncoder
from nacl.exceptions import CryptoError
from nacl.hash import blake2b
from nacl.secret import SecretBox
from pydantic import BaseModel, ValidationError

from dbconsole.core.clock import Clock, new_id
from dbconsole.core.exceptions import StaleError, TamperedError

MIN_KEY_BYTES = 32

CookieKind = Literal["session", "identity"]


class CookiePayload(BaseModel):
    """Fixed-shape payload carried inside a sealed cookie.

    ``session`` cookies carry the session id; ``identity`` cookies carry
    the sealed password used for silent re-authentication.
    """

    kind: CookieKind
    username: str
    session_id: Optional[str] = None
    sealed_password: Optional[str] = None
    nonce: str
    issued_at: float


def _derive(key: bytes, purpose: bytes) -> bytes:
    return blake2b(key, digest_size=SecretBox.KEY_SIZE, person=purpose, encoder=RawEncoder)


def encode_token(sealed: bytes) -> str:
    """Render sealed bytes as a cookie-safe string."""
    return base64.urlsafe_b64encode(sealed).rstrip(b"=").decode("ascii")


def decode_token(value: str) -> bytes:
    """Inverse of ``encode_token``; malformed input counts as tampering."""
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise TamperedError(cause=exc) from exc


class CookieSealer:
    """Seals and opens cookie payloads and stored passwords."""

    def __init__(
        self,
        key: bytes,
        *,
        max_age_seconds: float,
        clock_skew_seconds: float = 60.0,
        clock: Optional[Clock] = None,
    ):
        if len(key) < MIN_KEY_BYTES:
            raise ValueError(f"sealer key must be at least {MIN_KEY_BYTES} bytes")
        self._cookie_box = SecretBox(_derive(key, b"dbconsole.cookie"))
        self._secret_box = SecretBox(_derive(key, b"dbconsole.secret"))
        self.max_age_seconds = max_age_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self.clock = clock or Clock()

    def new_payload(
        self,
        kind: CookieKind,
        username: str,
        *,
        session_id: Optional[str] = None,
        sealed_password: Optional[bytes] = None,
    ) -> CookiePayload:
        """Build a payload with a fresh nonce and the current issue time."""
        return CookiePayload(
            kind=kind,
            username=username,
            session_id=session_id,
            sealed_password=encode_token(sealed_password) if sealed_password is not None else None,
            nonce=new_id(),
            issued_at=self.clock.wall(),
        )

    def seal(self, payload: CookiePayload) -> bytes:
        return bytes(self._cookie_box.encrypt(payload.model_dump_json().encode("utf-8")))

    def open(self, sealed: bytes, *, max_age_seconds: Optional[float] = None) -> CookiePayload:
        """Verify, decrypt and age-check a sealed payload.

        Raises:
            TamperedError: integrity check failed or the payload is malformed.
            StaleError: ``issued_at`` is older than the maximum age, or
                further in the future than the allowed clock skew.
        """
        try:
            plaintext = self._cookie_box.decrypt(sealed)
            payload = CookiePayload.model_validate_json(plaintext)
        except (CryptoError, ValueError, TypeError, ValidationError) as exc:
            raise TamperedError(cause=exc) from exc

        limit = self.max_age_seconds if max_age_seconds is None else max_age_seconds
        age = self.clock.wall() - payload.issued_at
        if age > limit:
            raise StaleError()
        if age < -self.clock_skew_seconds:
            raise StaleError("Cookie was issued in the future")
        return payload

    def seal_secret(self, secret: str) -> bytes:
        if not secret:
            raise ValueError("refusing to seal an empty secret")
        return bytes(self._secret_box.encrypt(secret.encode("utf-8")))

    def open_secret(self, sealed: bytes) -> str:
        try:
            secret = self._secret_box.decrypt(sealed).decode("utf-8")
        except (CryptoError, ValueError, TypeError, UnicodeDecodeError) as exc:
            raise TamperedError("Stored credential failed its integrity check", cause=exc) from exc
        if not secret:
            raise TamperedError("Stored credential is empty")
        return secret

    def open_payload_secret(self, payload: CookiePayload) -> str:
        """Recover the password carried by an identity payload."""
        if not payload.sealed_password:
            raise TamperedError("Identity cookie carries no credential")
        return self.open_secret(decode_token(payload.sealed_password))
