"""
api/routes/v1/sso.py -- SSO provider listing and binding management.

Routes:
  GET    /api/v1/auth/sso/providers            -- configured providers (public)
  GET    /api/v1/auth/sso/bindings             -- the user's bindings (requires auth)
  POST   /api/v1/auth/sso/bindings             -- bind a provider account (requires auth)
  DELETE /api/v1/auth/sso/bindings/{provider}  -- unbind (requires auth)

SSO login itself is in api/routes/v1/auth.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import MessageResponse, SSOBindingCreate, SSOBindingResponse, SSOProviderInfo
from auth.dependencies import get_current_claims
from auth.models import AccessClaims
from auth.sso import SSOBindingManager

router = APIRouter()


@router.get("/auth/sso/providers", response_model=list[SSOProviderInfo])
def list_providers(request: Request) -> list[SSOProviderInfo]:
    """Return the configured SSO providers. Empty when no client IDs are set."""
    sso: SSOBindingManager = request.app.state.sso
    return [SSOProviderInfo(name=name, label=sso.get_provider(name).label) for name in sso.provider_names]


@router.get("/auth/sso/bindings", response_model=list[SSOBindingResponse])
def list_bindings(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> list[SSOBindingResponse]:
    sso: SSOBindingManager = request.app.state.sso
    return [SSOBindingResponse.from_domain(b) for b in sso.list_bindings(claims.user_id)]


@router.post("/auth/sso/bindings", response_model=SSOBindingResponse, status_code=201)
def add_binding(
    request: Request,
    body: SSOBindingCreate,
    claims: AccessClaims = Depends(get_current_claims),
) -> SSOBindingResponse:
    """Bind the provider account behind an authorization code to the current user.

    Conflicts return 409 and leave existing bindings untouched.
    """
    sso: SSOBindingManager = request.app.state.sso
    return SSOBindingResponse.from_domain(sso.add_binding(claims.user_id, body.provider, body.code))


@router.delete("/auth/sso/bindings/{provider}", response_model=MessageResponse)
def delete_binding(
    request: Request,
    provider: str,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    """Unbind a provider. Refused with 400 if it is the account's last login method."""
    sso: SSOBindingManager = request.app.state.sso
    if not sso.delete_binding(claims.user_id, provider):
        raise HTTPException(
            status_code=404,
            detail={"code": "sso_binding_not_found", "message": "No binding for this provider."},
        )
    return MessageResponse(message="SSO binding removed.")
