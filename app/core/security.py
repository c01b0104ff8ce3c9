"""
Session token validation.

The identity provider issues signed session JWTs (HS256 by default). This
module only verifies them and extracts the principal; user records are looked
up by the API dependencies.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any

from jose import jwt, JWTError
from jose.exceptions import ExpiredSignatureError

from app.core.config import settings


class SessionTokenError(Exception):
    """Session token is missing, expired or invalid."""
    pass


@dataclass(frozen=True)
class SessionPrincipal:
    """Authenticated caller as asserted by the identity provider."""
    subject: Optional[str]
    email: Optional[str]


def create_session_token(claims: Dict[str, Any]) -> str:
    """Sign a session token. Used by local tooling and tests."""
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> SessionPrincipal:
    """
    Verify a session token and return its principal.

    Raises:
        SessionTokenError: If the token cannot be verified or carries no identity
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError:
        raise SessionTokenError("Session token has expired")
    except JWTError as e:
        raise SessionTokenError(f"Invalid session token: {str(e)}")

    principal = SessionPrincipal(subject=payload.get("sub"), email=payload.get("email"))
    if not principal.subject and not principal.email:
        raise SessionTokenError("Session token carries no user identity")
    return principal
