"""Authentication dependencies for customer and admin scope."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import AuthenticationRequired, PermissionDenied
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the caller from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthenticationRequired("Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise AuthenticationRequired(str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
        role=str(payload.get("role", "customer")),
    )


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.is_admin:
        raise PermissionDenied("Admin access required.")
    return auth
