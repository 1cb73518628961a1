"""Cookie sealing and cookie helpers."""

from dbconsole.security.sealer import CookiePayload, CookieSealer, decode_token, encode_token

__all__ = ["CookiePayload", "CookieSealer", "decode_token", "encode_token"]
