"""
auth/login.py -- LoginOrchestrator: first factor -> second-factor check -> session.

States:
  FirstFactor        exactly one of password / SSO code / passkey assertion
                     resolves a user id. Any failure -> REJECTED.
  SecondFactorCheck  a verified TOTP secret -> PENDING_SECOND_FACTOR with a
                     pending token; TwoFactorService finishes from there.
  IssueSession       -> AUTHENTICATED with a fresh token lineage.

Attempts are a tagged union (PasswordAttempt | SSOAttempt | PasskeyAttempt)
and the orchestrator dispatches on the variant. Rejections carry no hint of
which factor or field was wrong. The one exception is a passkey counter
regression, which is still REJECTED but flagged "cloned_authenticator" so
the caller can warn the user.

The orchestrator keeps no state between calls; the pending token is the only
thing that links the two halves of a two-factor login.
"""

from __future__ import annotations

import logging

from auth.models import (
    AuthenticationOptions,
    LoginAttempt,
    LoginResult,
    LoginStatus,
    PasskeyAttempt,
    PasskeyAuthStatus,
    PasswordAttempt,
    SSOAttempt,
)
from auth.passkeys import PasskeyCeremonyEngine
from auth.passwords import authenticate_password
from auth.sso import SSOBindingManager
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.twofactor import TwoFactorService
from core.config import Settings, get_settings

logger = logging.getLogger("toolcraft.auth.login")

CLONED_AUTHENTICATOR = "cloned_authenticator"


class LoginOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        sso: SSOBindingManager,
        passkeys: PasskeyCeremonyEngine,
        two_factor: TwoFactorService,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._sso = sso
        self._passkeys = passkeys
        self._two_factor = two_factor
        self._settings = settings or get_settings()

    def begin_passkey_login(self) -> AuthenticationOptions:
        return self._passkeys.begin_authentication()

    def login(self, attempt: LoginAttempt) -> LoginResult:
        """Run one attempt through the state machine.

        IdentityProviderUnavailableError and persistence errors propagate;
        everything else ends in a LoginResult.
        """
        user_id, warning = self._first_factor(attempt)
        if user_id is None:
            logger.info("Login rejected (method=%s)", type(attempt).__name__)
            return LoginResult(LoginStatus.REJECTED, warning=warning)

        if self._two_factor.is_enabled(user_id):
            logger.info("Login pending second factor (user_id=%s)", user_id)
            return LoginResult(
                LoginStatus.PENDING_SECOND_FACTOR,
                user_id=user_id,
                pending_token=self._tokens.issue_pending_token(user_id),
            )

        return LoginResult(
            LoginStatus.AUTHENTICATED,
            user_id=user_id,
            session=self._tokens.issue_session(user_id),
        )

    def _first_factor(self, attempt: LoginAttempt) -> tuple[int | None, str | None]:
        if isinstance(attempt, PasswordAttempt):
            if not self._settings.enable_password_login:
                return None, None
            user = authenticate_password(self._store, attempt.username, attempt.password)
            return (user.id if user else None), None

        if isinstance(attempt, SSOAttempt):
            return self._sso.exchange_and_identify(attempt.provider, attempt.code), None

        if isinstance(attempt, PasskeyAttempt):
            result = self._passkeys.finish_authentication(attempt.challenge, attempt.response)
            if result.status is PasskeyAuthStatus.COUNTER_REGRESSION:
                return None, CLONED_AUTHENTICATOR
            return result.user_id, None

        raise TypeError(f"Unsupported login attempt: {type(attempt).__name__}")
