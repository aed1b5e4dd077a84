"""
api/routes/v1/twofactor.py -- Two-factor enrollment and management endpoints.

Routes:
  GET    /api/v1/auth/2fa                   -- status (requires auth)
  POST   /api/v1/auth/2fa/totp              -- begin TOTP enrollment (requires auth)
  POST   /api/v1/auth/2fa/totp/confirm      -- confirm with first code; returns recovery codes
  DELETE /api/v1/auth/2fa                   -- turn 2FA off with a TOTP or recovery code (requires auth)
  POST   /api/v1/auth/2fa/recovery/disable  -- lost authenticator: pending token + recovery code

Completing a login with a second factor is in api/routes/v1/auth.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    MessageResponse,
    RecoveryCodesResponse,
    SecondFactorLoginRequest,
    TotpCodeRequest,
    TotpEnrollmentResponse,
    TwoFactorCodeRequest,
    TwoFactorStatusResponse,
)
from auth.dependencies import get_current_claims
from auth.models import AccessClaims
from auth.twofactor import TwoFactorService
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


@router.get("/auth/2fa", response_model=TwoFactorStatusResponse)
def two_factor_status(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> TwoFactorStatusResponse:
    two_factor: TwoFactorService = request.app.state.two_factor
    status = two_factor.get_status(claims.user_id)
    return TwoFactorStatusResponse(
        enabled=status.enabled,
        type=status.type,
        created_at=status.created_at,
        recovery_codes_remaining=status.recovery_codes_remaining,
    )


@router.post("/auth/2fa/totp", response_model=TotpEnrollmentResponse)
def begin_totp_enrollment(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> JSONResponse:
    """Generate a TOTP secret. 2FA stays off until /totp/confirm succeeds."""
    two_factor: TwoFactorService = request.app.state.two_factor
    info = two_factor.begin_enrollment(claims.user_id)
    resp = JSONResponse(
        content=TotpEnrollmentResponse(secret=info.secret, provisioning_uri=info.provisioning_uri).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/2fa/totp/confirm", response_model=RecoveryCodesResponse)
def confirm_totp_enrollment(
    request: Request,
    body: TotpCodeRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> JSONResponse:
    """Turn 2FA on. The recovery codes in the response are never shown again."""
    two_factor: TwoFactorService = request.app.state.two_factor
    codes = two_factor.confirm_enrollment(claims.user_id, body.code)
    if codes is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_totp_code", "message": "Invalid verification code."},
        )
    resp = JSONResponse(content=RecoveryCodesResponse(recovery_codes=codes).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.delete("/auth/2fa", response_model=MessageResponse)
def delete_two_factor(
    request: Request,
    body: TwoFactorCodeRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    """Turn 2FA off after checking a current TOTP code or one recovery code.

    A session alone is not enough. A recovery code used here is consumed.

    404 two_factor_not_enabled when there is nothing to remove.
    """
    two_factor: TwoFactorService = request.app.state.two_factor
    if not two_factor.delete_with_code(claims.user_id, body.code):
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_totp_code", "message": "Invalid verification or recovery code."},
        )
    return MessageResponse(message="Two-factor authentication removed.")


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/2fa/recovery/disable", response_model=MessageResponse)
def disable_with_recovery_code(request: Request, body: SecondFactorLoginRequest) -> MessageResponse:
    """Remove 2FA using the pending token from a login plus one recovery code.

    Public: the caller has passed the first factor but has no session yet.
    """
    two_factor: TwoFactorService = request.app.state.two_factor
    if not two_factor.disable_with_recovery_code(body.pending_token, body.code):
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_recovery_code", "message": "Invalid or already used recovery code."},
        )
    return MessageResponse(message="Two-factor authentication removed. Log in again.")
