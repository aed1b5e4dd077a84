"""
api/main.py -- FastAPI application entry point for the Toolcraft credential service.

Exposes registration, login, session, passkey, two-factor, and SSO operations
over HTTP.
The routers are thin: every decision is made by the services in auth/.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the stores and services once, hangs them on app.state, and
tears them down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.passkeys import router as passkeys_router
from api.routes.v1.sso import router as sso_router
from api.routes.v1.twofactor import router as twofactor_router
from api.routes.v1.users import router as users_router
from auth.accounts import AccountService
from auth.errors import AuthServiceError
from auth.ledger import TokenLedger
from auth.login import LoginOrchestrator
from auth.oauth import IdentityProvider, build_identity_providers
from auth.passkeys import PasskeyCeremonyEngine
from auth.sso import SSOBindingManager
from auth.store import CredentialStore, iso_utc
from auth.tokens import TokenService
from auth.twofactor import TwoFactorService
from core.config import Settings, get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("toolcraft.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    store: CredentialStore,
    ledger: TokenLedger,
    settings: Settings,
    providers: dict[str, IdentityProvider],
) -> None:
    """Build the service graph on app.state. Leaves first, orchestrator last.

    Shared by the lifespan and the test fixtures so both run the same graph.
    """
    tokens = TokenService(ledger, settings)
    passkeys = PasskeyCeremonyEngine(store, settings)
    two_factor = TwoFactorService(store, tokens, settings)
    sso = SSOBindingManager(store, providers, settings)
    app.state.credential_store = store
    app.state.token_ledger = ledger
    app.state.tokens = tokens
    app.state.passkeys = passkeys
    app.state.two_factor = two_factor
    app.state.sso = sso
    app.state.accounts = AccountService(store, settings)
    app.state.login = LoginOrchestrator(store, tokens, sso, passkeys, two_factor, settings)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired ceremony challenges and refresh tokens every hour.

    Nothing depends on this for correctness: consumers already refuse expired
    rows. It only keeps the tables from growing without bound.
    """
    while True:
        await asyncio.sleep(60 * 60)
        now = iso_utc(datetime.now(timezone.utc))
        challenges = app.state.credential_store.purge_expired_challenges(now)
        refresh_tokens = app.state.token_ledger.purge_expired(now)
        logger.info("Purged %d expired challenges, %d expired refresh tokens", challenges, refresh_tokens)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, even if a request handler raised.
    """
    logger.info("Toolcraft credential service starting up")
    store = CredentialStore(_settings.database_url)
    ledger = TokenLedger(_settings.database_url)
    providers = build_identity_providers(_settings)
    wire_services(app, store, ledger, _settings, providers)
    logger.info(
        "Auth initialized (password_login=%s sso_providers=%s rp_id=%s)",
        _settings.enable_password_login,
        ",".join(sorted(providers)) or "none",
        _settings.webauthn_rp_id,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.credential_store.close()
    app.state.token_ledger.close()
    logger.info("Toolcraft credential service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Toolcraft Auth API",
    description="Credential and session service: password, SSO, and passkey login with TOTP second factor.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(passkeys_router, prefix="/api/v1", tags=["Passkeys"])
app.include_router(twofactor_router, prefix="/api/v1", tags=["Two-Factor"])
app.include_router(sso_router, prefix="/api/v1", tags=["SSO"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves in the same {"error": {"code", "message", "detail"}}
# envelope, so clients branch on error.code and never on the status alone.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(AuthServiceError)
async def auth_service_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Map domain conflicts and provider outages onto their own code and status."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.info("Rate limit hit on %s %s (%s)", request.method, request.url.path, exc.detail)
    return _error_response(
        429,
        "rate_limited",
        "Too many attempts. Try again later.",
        detail=str(exc.detail),
        headers={"Retry-After": str(int(getattr(exc, "retry_after", 60)))},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 with one "location: message" entry per failed field."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}" for err in exc.errors()
    )
    return _error_response(422, "validation_error", "Request validation failed.", detail=problems)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException with a {"code", "message"} dict; pass it through as the error."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected faults, store I/O errors included. Details go to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration. No rate limit -- health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
