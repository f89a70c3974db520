from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from taskflow.adapters.sql_directory import SqlIdentityDirectory
from taskflow.domain.permissions import ROLE_ADMIN
from taskflow.infra.auth import TokenError, decode_access_token

# Tokens are issued by the external identity provider; tokenUrl only documents it.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    return claims


def require_admin(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> dict[str, Any]:
    # Looked up per request; role changes apply without reissuing tokens.
    if not SqlIdentityDirectory().user_has_role(claims["sub"], ROLE_ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return claims
