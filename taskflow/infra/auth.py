from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))


class TokenError(Exception):
    pass


def create_access_token(*, user_id: str, expires_minutes: int | None = None) -> str:
    # Production tokens come from the identity provider; this mints compatible ones for tools and tests.
    issued = datetime.now(UTC)
    claims: dict[str, Any] = {
        "sub": user_id,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)).timestamp()),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify signature and expiry and return the claims.

    ``sub`` carries the caller id; roles are never taken from the token.
    """
    try:
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.PyJWTError as exc:
        raise TokenError(str(exc)) from exc
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise TokenError("token subject is empty")
    return claims
