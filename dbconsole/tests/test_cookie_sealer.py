"""Tests for cookie sealing: integrity, age limits and secret storage."""

import pytest

from dbconsole.core.clock import ManualClock
from dbconsole.core.exceptions import StaleError, TamperedError
from dbconsole.security.sealer import CookieSealer, decode_token, encode_token

pytestmark = pytest.mark.security

KEY = b"s" * 32


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sealer(clock):
    return CookieSealer(KEY, max_age_seconds=3600, clock_skew_seconds=60, clock=clock)


class TestSealAndOpen:
    def test_open_returns_sealed_payload(self, sealer):
        payload = sealer.new_payload("session", "alice", session_id="abc")
        opened = sealer.open(sealer.seal(payload))
        assert opened == payload

    def test_every_single_bit_flip_is_rejected(self, sealer):
        """Flipping any one bit anywhere in the sealed value must fail integrity."""
        sealed = sealer.seal(sealer.new_payload("session", "alice", session_id="abc"))
        for index in range(len(sealed)):
            for bit in (0x01, 0x80):
                mutated = bytearray(sealed)
                mutated[index] ^= bit
                with pytest.raises(TamperedError):
                    sealer.open(bytes(mutated))

    def test_truncated_value_is_tampered(self, sealer):
        sealed = sealer.seal(sealer.new_payload("session", "alice", session_id="abc"))
        with pytest.raises(TamperedError):
            sealer.open(sealed[:-1])
        with pytest.raises(TamperedError):
            sealer.open(b"")

    def test_other_key_cannot_open(self, sealer, clock):
        other = CookieSealer(b"o" * 32, max_age_seconds=3600, clock=clock)
        sealed = sealer.seal(sealer.new_payload("session", "alice", session_id="abc"))
        with pytest.raises(TamperedError):
            other.open(sealed)

    def test_nonce_differs_per_seal(self, sealer):
        payload = sealer.new_payload("session", "alice", session_id="abc")
        assert sealer.seal(payload) != sealer.seal(payload)

    def test_short_key_rejected(self):
        with pytest.raises(ValueError):
            CookieSealer(b"short", max_age_seconds=10)


class TestAge:
    def test_payload_older_than_max_age_is_stale(self, sealer, clock):
        sealed = sealer.seal(sealer.new_payload("session", "alice", session_id="abc"))
        clock.advance(3600.5)
        with pytest.raises(StaleError):
            sealer.open(sealed)

    def test_payload_at_max_age_still_opens(self, sealer, clock):
        sealed = sealer.seal(sealer.new_payload("session", "alice", session_id="abc"))
        clock.advance(3600)
        assert sealer.open(sealed).username == "alice"

    def test_per_call_max_age_overrides_default(self, sealer, clock):
        sealed = sealer.seal(sealer.new_payload("session", "alice", session_id="abc"))
        clock.advance(20)
        with pytest.raises(StaleError):
            sealer.open(sealed, max_age_seconds=10)

    def test_payload_from_the_future_is_stale(self, clock):
        ahead = ManualClock(start=clock.monotonic() + 120, wall_start=clock.wall() + 120)
        issuer = CookieSealer(KEY, max_age_seconds=3600, clock=ahead)
        reader = CookieSealer(KEY, max_age_seconds=3600, clock_skew_seconds=60, clock=clock)
        sealed = issuer.seal(issuer.new_payload("session", "alice", session_id="abc"))
        with pytest.raises(StaleError):
            reader.open(sealed)

    def test_small_skew_is_tolerated(self, clock):
        ahead = ManualClock(start=clock.monotonic() + 30, wall_start=clock.wall() + 30)
        issuer = CookieSealer(KEY, max_age_seconds=3600, clock=ahead)
        reader = CookieSealer(KEY, max_age_seconds=3600, clock_skew_seconds=60, clock=clock)
        sealed = issuer.seal(issuer.new_payload("session", "alice", session_id="abc"))
        assert reader.open(sealed).session_id == "abc"


class TestSecrets:
    def test_secret_round_trip(self, sealer):
        assert sealer.open_secret(sealer.seal_secret("hunter2")) == "hunter2"

    def test_sealed_secret_is_not_plaintext(self, sealer):
        assert b"hunter2" not in sealer.seal_secret("hunter2")

    def test_cookie_box_cannot_open_secret(self, sealer):
        """Passwords and cookie payloads use separate subkeys."""
        with pytest.raises(TamperedError):
            sealer.open(sealer.seal_secret("hunter2"))

    def test_empty_secret_refused(self, sealer):
        with pytest.raises(ValueError):
            sealer.seal_secret("")

    def test_identity_payload_carries_password(self, sealer):
        payload = sealer.new_payload("identity", "alice", sealed_password=sealer.seal_secret("pw"))
        opened = sealer.open(sealer.seal(payload))
        assert sealer.open_payload_secret(opened) == "pw"

    def test_identity_payload_without_password_is_tampered(self, sealer):
        payload = sealer.new_payload("identity", "alice")
        with pytest.raises(TamperedError):
            sealer.open_payload_secret(payload)


class TestTokens:
    def test_token_is_cookie_safe(self, sealer):
        token = encode_token(sealer.seal(sealer.new_payload("session", "alice", session_id="x")))
        assert "=" not in token
        assert ";" not in token
        assert decode_token(token)

    @pytest.mark.parametrize("value", ["abcde", "café"])
    def test_garbage_token_is_tampered(self, value):
        with pytest.raises(TamperedError):
            decode_token(value)
