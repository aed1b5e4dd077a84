"""
api/routes/v1/auth.py -- Login, second-factor completion, and session endpoints.

Routes:
  POST /api/v1/auth/login                      -- password login
  POST /api/v1/auth/sso/{provider}/login       -- SSO login with an authorization code
  GET  /api/v1/auth/passkeys/login/challenge   -- begin passkey login (user-agnostic)
  POST /api/v1/auth/passkeys/login             -- passkey login with an assertion
  POST /api/v1/auth/2fa/login                  -- finish a pending login with a TOTP code
  POST /api/v1/auth/2fa/login/recovery         -- finish a pending login with a recovery code
  POST /api/v1/auth/token/refresh              -- new access token from a refresh token
  GET  /api/v1/auth/session                    -- verified claims of the bearer token
  POST /api/v1/auth/logout                     -- revoke the bearer token's lineage
  GET  /api/v1/auth/me                         -- current user info (requires auth)

Security:
  [H2] Every login endpoint is rate-limited per IP (LOGIN_RATE_LIMIT).
  Login failures are one generic "invalid_credentials" 401 regardless of
  method or cause. The only specific rejection is "cloned_authenticator"
  for a passkey signature counter regression.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthenticationOptionsResponse,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasskeyLoginRequest,
    PasswordLoginRequest,
    RefreshRequest,
    RefreshResponse,
    SecondFactorLoginRequest,
    SessionResponse,
    SSOLoginRequest,
)
from auth.dependencies import get_bearer_token, get_current_claims, get_current_user
from auth.login import CLONED_AUTHENTICATOR, LoginOrchestrator
from auth.models import (
    AccessClaims,
    LoginResult,
    LoginStatus,
    PasskeyAttempt,
    PasswordAttempt,
    SSOAttempt,
    User,
)
from auth.tokens import TokenService
from auth.twofactor import TwoFactorService
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - login, 2fa login, refresh, passkey challenge: public (rate-limited where they check secrets)
# - session, me: requires a valid access token (get_current_claims)
# - logout: requires an authentic bearer token; expiry is not required
router = APIRouter()


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _no_store(status_code: int, content: dict) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _rejected(code: str = "invalid_credentials", message: str = "Invalid credentials.") -> JSONResponse:
    return _no_store(401, {"error": {"code": code, "message": message}})


def _login_response(result: LoginResult) -> JSONResponse:
    if result.status is LoginStatus.REJECTED:
        if result.warning == CLONED_AUTHENTICATOR:
            return _rejected(
                "cloned_authenticator",
                "This passkey reported an invalid signature counter and may have been cloned. "
                "Remove it and register it again.",
            )
        return _rejected()
    if result.status is LoginStatus.PENDING_SECOND_FACTOR:
        body = LoginResponse(
            status=LoginStatus.PENDING_SECOND_FACTOR.value,
            pending_token=result.pending_token,
        )
    else:
        body = LoginResponse.from_session(result.session)
    return _no_store(200, body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# First factor
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: PasswordLoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Wrong username, wrong password, passwordless account, and disabled
    password login all produce the same 401.
    """
    orchestrator: LoginOrchestrator = request.app.state.login
    return _login_response(orchestrator.login(PasswordAttempt(body.username, body.password)))


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/sso/{provider}/login", response_model=LoginResponse)
def sso_login(request: Request, provider: str, body: SSOLoginRequest) -> JSONResponse:
    """Authenticate with an authorization code from a bound SSO provider.

    An identity with no binding is rejected; login never creates accounts.
    A provider outage surfaces as 502 identity_provider_unavailable.
    """
    orchestrator: LoginOrchestrator = request.app.state.login
    return _login_response(orchestrator.login(SSOAttempt(provider, body.code)))


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.get("/auth/passkeys/login/challenge", response_model=AuthenticationOptionsResponse)
def passkey_login_challenge(request: Request) -> AuthenticationOptionsResponse:
    """Issue a single-use, user-agnostic challenge for passkey login."""
    orchestrator: LoginOrchestrator = request.app.state.login
    options = orchestrator.begin_passkey_login()
    return AuthenticationOptionsResponse(
        challenge=options.challenge,
        rp_id=options.rp_id,
        timeout_ms=options.timeout_ms,
    )


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/passkeys/login", response_model=LoginResponse)
def passkey_login(request: Request, body: PasskeyLoginRequest) -> JSONResponse:
    """Authenticate with a signed passkey assertion."""
    orchestrator: LoginOrchestrator = request.app.state.login
    return _login_response(orchestrator.login(PasskeyAttempt(body.challenge, body.response.to_domain())))


# ---------------------------------------------------------------------------
# Second factor
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/2fa/login", response_model=LoginResponse)
def two_factor_login(request: Request, body: SecondFactorLoginRequest) -> JSONResponse:
    """Finish a pending login with a TOTP code."""
    two_factor: TwoFactorService = request.app.state.two_factor
    result = two_factor.complete_login(body.pending_token, body.code)
    if not result.ok:
        return _rejected("invalid_totp_code", "Invalid or expired verification code.")
    return _no_store(200, LoginResponse.from_session(result.session).model_dump(mode="json"))


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/2fa/login/recovery", response_model=LoginResponse)
def recovery_code_login(request: Request, body: SecondFactorLoginRequest) -> JSONResponse:
    """Finish a pending login by spending one recovery code.

    recovery_codes_exhausted=true tells the client to prompt for re-enrollment.
    """
    two_factor: TwoFactorService = request.app.state.two_factor
    result = two_factor.complete_login_with_recovery_code(body.pending_token, body.code)
    if not result.ok:
        return _rejected("invalid_recovery_code", "Invalid or already used recovery code.")
    body_out = LoginResponse.from_session(
        result.session,
        recovery_codes_remaining=result.recovery_codes_remaining,
        recovery_codes_exhausted=result.recovery_codes_exhausted,
    )
    return _no_store(200, body_out.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post("/auth/token/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Mint a new access token in the refresh token's lineage."""
    tokens: TokenService = request.app.state.tokens
    access_token, valid = tokens.rotate_access_token(body.refresh_token)
    if not valid:
        return _rejected("invalid_refresh_token", "Refresh token is invalid, expired, or revoked.")
    return _no_store(200, RefreshResponse(access_token=access_token).model_dump(mode="json"))


@router.get("/auth/session", response_model=SessionResponse)
def session(claims: AccessClaims = Depends(get_current_claims)) -> SessionResponse:
    """Return the verified claims of the current access token."""
    return SessionResponse(
        user_id=claims.user_id,
        lineage_id=claims.lineage_id,
        issued_at=claims.issued_at,
        expires_at=claims.expires_at,
    )


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, token: str = Depends(get_bearer_token)) -> MessageResponse:
    """Revoke every token in the bearer token's lineage, past and future.

    Idempotent: logging out twice with the same token succeeds both times.
    """
    tokens: TokenService = request.app.state.tokens
    if not tokens.revoke_lineage(token):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    two_factor: TwoFactorService = request.app.state.two_factor
    return MeResponse(
        user_id=current_user.id,
        username=current_user.username,
        email=current_user.email,
        roles=current_user.roles,
        has_password=current_user.hashed_password is not None,
        two_factor_enabled=two_factor.is_enabled(current_user.id),
    )
