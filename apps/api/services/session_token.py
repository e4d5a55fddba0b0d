"""Signed session tokens identifying the calling Genpire user.

Tokens are minted by the identity provider in front of the API (sharing
``JWT_SECRET``); the API only verifies them and reads the subject.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "genpire_session"


@dataclass
class SessionClaims:
    user_id: str
    email: Optional[str]
    expires_at: int


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((now + timedelta(hours=ttl_hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry and token type. Raises ValueError when any check fails."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=subject,
        email=str(payload.get("email", "")).strip() or None,
        expires_at=int(payload.get("exp", 0)),
    )
