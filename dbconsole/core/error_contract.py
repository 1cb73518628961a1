"""Canonical API error envelope helpers."""

from __future__ import annotations

from typing import Any


def build_error_envelope(
    *,
    code: str,
    kind: str | None,
    reason: str | None,
    message: str,
    request_id: str | None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the error payload shared by every route.

    ``detail`` mirrors ``error.message`` for clients that only read the
    FastAPI default field.
    """
    payload: dict[str, Any] = {
        "detail": message,
        "error": {
            "code": code,
            "kind": kind,
            "reason": reason,
            "message": message,
            "request_id": request_id,
        },
    }
    if extra:
        payload.update(extra)
    return payload
