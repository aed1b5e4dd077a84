"""
api/routes/v1/users.py -- Account registration endpoints.

Routes (public, rate-limited):
  POST /api/v1/user/create  -- create a local account with a password
  POST /api/v1/user/check   -- whether a username is already taken

Registration does not log the new user in; the client calls
/api/v1/auth/login afterwards. ENABLE_USER_REGISTRATION=false turns
/user/create into 403 registration_disabled.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from api.limiter import limiter
from api.models import UserCreateRequest, UserResponse, UsernameCheckRequest, UsernameCheckResponse
from auth.accounts import AccountService
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/user/create", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreateRequest) -> UserResponse:
    """Create an account. 409 username_taken when the name is in use."""
    accounts: AccountService = request.app.state.accounts
    user = accounts.create_user(body.username, body.password, body.email)
    return UserResponse(user_id=user.id, username=user.username, email=user.email, created_at=user.created_at)


@limiter.limit(_settings.login_rate_limit)  # [H2] limits username enumeration
@router.post("/user/check", response_model=UsernameCheckResponse)
def check_username(request: Request, body: UsernameCheckRequest) -> UsernameCheckResponse:
    accounts: AccountService = request.app.state.accounts
    return UsernameCheckResponse(exists=accounts.check_username(body.username))
