from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Any
import uuid

from jose import JWTError, jwt

from app.config import settings


@dataclass(frozen=True)
class Actor:
    """Authenticated identity performing an operation (recorded on audit columns)."""
    id: uuid.UUID
    email: Optional[str] = None


def create_access_token(
    subject: str | uuid.UUID,
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[dict[str, Any]] = None
) -> str:
    """
    Create a signed access token.

    Tokens are normally issued by the auth service; this exists for
    local tooling and tests that need to call the API.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    to_encode = {"sub": str(subject), "exp": expire, "type": "access"}
    if additional_claims:
        to_encode.update(additional_claims)
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[Actor]:
    """
    Verify an access token and return the actor it identifies.

    Returns None for invalid, expired or non-access tokens.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

    if payload.get("type") != "access":
        return None

    subject = payload.get("sub")
    if not subject:
        return None

    try:
        actor_id = uuid.UUID(subject)
    except ValueError:
        return None

    return Actor(id=actor_id, email=payload.get("email"))
