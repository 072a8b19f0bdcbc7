from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

SESSION_COOKIE = "app_session"


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _sign(body: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()


def create_token(payload: dict[str, Any], secret: str, ttl_seconds: int) -> str:
    """Create a signed, expiring session token using HMAC-SHA256.

    The identity bridge issues these after sign-in; the payload carries the
    user's open id as ``sub`` plus optional ``name`` and ``email`` claims.
    """
    data = dict(payload)
    data["exp"] = int(time.time()) + ttl_seconds
    body = _b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))
    return f"{body}.{_b64encode(_sign(body, secret))}"


def verify_token(token: str, secret: str) -> dict[str, Any]:
    """Verify token signature and expiry, returning the payload if valid."""
    try:
        body, signature = token.split(".", 1)
    except ValueError as exc:
        raise ValueError("Invalid token format.") from exc

    if not hmac.compare_digest(_b64encode(_sign(body, secret)), signature):
        raise ValueError("Invalid token signature.")

    try:
        payload = json.loads(_b64decode(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("Invalid token payload.") from exc
    exp = payload.get("exp")
    if exp is None or int(exp) < int(time.time()):
        raise ValueError("Token expired.")
    if not payload.get("sub"):
        raise ValueError("Token subject missing.")

    return payload
