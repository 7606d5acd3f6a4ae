from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, status

from onboarding.core.security import bearer_token, constant_time_equals, token_fingerprint
from onboarding.core.settings import settings


def _want_admin_hash() -> str:
    # preferred: ADMIN_TOKEN_HASH, fallback: ADMIN_TOKEN (hashed)
    raw = (settings.ADMIN_TOKEN_HASH or "").strip().lower()
    if raw:
        return raw
    legacy = (settings.ADMIN_TOKEN or "").strip()
    return token_fingerprint(legacy) if legacy else ""


def require_admin(authorization: Optional[str] = Header(default=None)) -> dict:
    want_hash = _want_admin_hash()
    if not want_hash:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="admin_not_configured")

    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    got_hash = token_fingerprint(token)
    if not got_hash or not constant_time_equals(got_hash, want_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

    return {"ok": True, "admin_hash_prefix": want_hash[:8]}
