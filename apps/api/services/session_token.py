"""Session token helpers for backend-authenticated account scope."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "licence_session"
ROLES = ("customer", "admin")


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    role: str = "customer",
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed session token. Issuance normally lives in the identity service."""
    if role not in ROLES:
        raise ValueError(f"Unknown role {role!r}.")
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed session token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")

    if str(payload.get("role", "customer")) not in ROLES:
        raise ValueError("Session token carries an unknown role.")

    return payload
