from __future__ import annotations

import hashlib
import hmac
from typing import Optional


def normalize_token(token: Optional[str]) -> str:
    if not token:
        return ""
    return token.strip()


def token_fingerprint(token: str) -> str:
    token = normalize_token(token)
    if not token:
        return ""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def bearer_token(authorization: Optional[str]) -> str:
    """Token from an ``Authorization: Bearer <token>`` header, or ''."""
    raw = normalize_token(authorization)
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()
