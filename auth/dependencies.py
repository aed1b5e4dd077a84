"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>". Validation goes
through TokenService so revoked lineages are refused even before expiry.

get_bearer_token() only extracts the raw token (logout needs it even when
the token has expired). get_current_claims() validates it and raises 401.
get_current_user() additionally loads the User row.

Layer rule: auth/dependencies.py may import from fastapi (for Request and
HTTPException) because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import AccessClaims, User
from auth.store import CredentialStore
from auth.tokens import TokenService


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_bearer_token(request: Request) -> str:
    """Return the raw bearer token or raise 401 if the header is missing."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer ") or not auth_header[7:].strip():
        raise _unauthorized()
    return auth_header[7:].strip()


def get_current_claims(request: Request, token: str = Depends(get_bearer_token)) -> AccessClaims:
    """Require a valid, unrevoked access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    tokens: TokenService = request.app.state.tokens
    claims, ok = tokens.validate_access_token(token)
    if not ok or claims is None:
        raise _unauthorized()
    return claims


def get_current_user(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> User:
    """Require authentication and return the User behind the token."""
    store: CredentialStore = request.app.state.credential_store
    user = store.get_user(claims.user_id)
    if user is None:
        raise _unauthorized()
    return user
