"""
api/routes/v1/passkeys.py -- Passkey registration and management endpoints.

Routes (all require auth):
  POST   /api/v1/auth/passkeys/register/challenge -- begin registration
  POST   /api/v1/auth/passkeys/register           -- finish registration
  GET    /api/v1/auth/passkeys                    -- list the user's passkeys
  DELETE /api/v1/auth/passkeys/{passkey_id}       -- delete one (ownership checked)

Passkey login lives in api/routes/v1/auth.py with the other first factors.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import MessageResponse, PasskeyRegisterRequest, PasskeyResponse, RegistrationOptionsResponse
from auth.dependencies import get_current_claims
from auth.models import AccessClaims
from auth.passkeys import PasskeyCeremonyEngine

router = APIRouter()


@router.post("/auth/passkeys/register/challenge", response_model=RegistrationOptionsResponse)
def begin_registration(
    request: Request,
    claims: AccessClaims = Depends(get_current_claims),
) -> RegistrationOptionsResponse:
    """Issue a registration challenge. A newer challenge replaces an older one."""
    engine: PasskeyCeremonyEngine = request.app.state.passkeys
    return RegistrationOptionsResponse.from_domain(engine.begin_registration(claims.user_id))


@router.post("/auth/passkeys/register", response_model=PasskeyResponse, status_code=201)
def finish_registration(
    request: Request,
    body: PasskeyRegisterRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> PasskeyResponse:
    """Verify an attestation and store the passkey.

    The challenge is spent by this call whether or not verification passes.
    """
    engine: PasskeyCeremonyEngine = request.app.state.passkeys
    credential = engine.finish_registration(claims.user_id, body.challenge, body.response.to_domain())
    if credential is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "passkey_verification_failed", "message": "Passkey registration could not be verified."},
        )
    return PasskeyResponse.from_domain(credential)


@router.get("/auth/passkeys", response_model=list[PasskeyResponse])
def list_passkeys(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> list[PasskeyResponse]:
    engine: PasskeyCeremonyEngine = request.app.state.passkeys
    return [PasskeyResponse.from_domain(p) for p in engine.list_passkeys(claims.user_id)]


@router.delete("/auth/passkeys/{passkey_id}", response_model=MessageResponse)
def delete_passkey(
    request: Request,
    passkey_id: int,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    """Delete a passkey. 404 covers both "no such key" and "not yours" (IDOR guard)."""
    engine: PasskeyCeremonyEngine = request.app.state.passkeys
    if not engine.delete_passkey(claims.user_id, passkey_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "passkey_not_found", "message": "Passkey not found."},
        )
    return MessageResponse(message="Passkey deleted.")
