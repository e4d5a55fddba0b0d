"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.errors import AuthenticationError
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.user_id in settings.ADMIN_USER_IDS


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise AuthenticationError(str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email)


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Restrict an endpoint to operators listed in ADMIN_USER_IDS."""
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return auth
