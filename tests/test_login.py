"""Unit tests for auth/login.py -- the LoginOrchestrator state machine.

Covers:
- password, SSO, and passkey first factors end in AUTHENTICATED with a session
- any first-factor failure ends in REJECTED without saying why
- disabled password login rejects even correct credentials
- a verified TOTP secret turns success into PENDING_SECOND_FACTOR
- a passkey counter regression is REJECTED with the cloned-authenticator flag
"""

from __future__ import annotations

import pyotp
import pytest

from auth.login import CLONED_AUTHENTICATOR, LoginOrchestrator
from auth.models import LoginStatus, PasskeyAttempt, PasswordAttempt, SSOAttempt
from auth.passwords import authenticate_password
from tests.helpers import PASSWORD, create_user, make_test_settings


def _register_passkey(passkeys, user_id, authenticator) -> None:
    options = passkeys.begin_registration(user_id)
    passkeys.finish_registration(user_id, options.challenge, authenticator.attest(options.challenge))


class TestPasswordLogin:
    def test_correct_password_authenticates(self, orchestrator, store, tokens) -> None:
        uid = create_user(store, "ada")
        result = orchestrator.login(PasswordAttempt("ada", PASSWORD))
        assert result.status is LoginStatus.AUTHENTICATED
        assert result.user_id == uid
        assert tokens.validate_access_token(result.session.access_token)[1] is True

    @pytest.mark.parametrize("username,password", [("ada", "wrong"), ("nobody", PASSWORD), ("", "")])
    def test_failures_are_indistinguishable(self, orchestrator, store, username, password) -> None:
        create_user(store, "ada")
        result = orchestrator.login(PasswordAttempt(username, password))
        assert result.status is LoginStatus.REJECTED
        assert result.user_id is None
        assert result.session is None
        assert result.warning is None

    def test_passwordless_account_rejects_password_login(self, orchestrator, store) -> None:
        create_user(store, "sso-only", password=False)
        assert orchestrator.login(PasswordAttempt("sso-only", "")).status is LoginStatus.REJECTED

    def test_disabled_password_login(self, store, tokens, sso, passkeys, two_factor) -> None:
        create_user(store, "ada")
        orchestrator = LoginOrchestrator(
            store, tokens, sso, passkeys, two_factor, make_test_settings(enable_password_login=False)
        )
        assert orchestrator.login(PasswordAttempt("ada", PASSWORD)).status is LoginStatus.REJECTED

    def test_authenticate_password_helper(self, store) -> None:
        create_user(store, "ada")
        assert authenticate_password(store, "ada", PASSWORD).username == "ada"
        assert authenticate_password(store, "ada", "nope") is None


class TestSSOLogin:
    def test_bound_identity_authenticates(self, orchestrator, store, sso, idp) -> None:
        uid = create_user(store, "ada")
        idp.add_code("bind", "gh-1")
        sso.add_binding(uid, "github", "bind")
        idp.add_code("login", "gh-1")

        result = orchestrator.login(SSOAttempt("github", "login"))
        assert result.status is LoginStatus.AUTHENTICATED
        assert result.user_id == uid

    def test_unbound_identity_rejected(self, orchestrator, idp) -> None:
        idp.add_code("login", "gh-unknown")
        assert orchestrator.login(SSOAttempt("github", "login")).status is LoginStatus.REJECTED

    def test_unknown_provider_rejected(self, orchestrator) -> None:
        assert orchestrator.login(SSOAttempt("gitlab", "code")).status is LoginStatus.REJECTED


class TestPasskeyLogin:
    def test_valid_assertion_authenticates(self, orchestrator, store, passkeys, authenticator) -> None:
        uid = create_user(store, "ada")
        _register_passkey(passkeys, uid, authenticator)

        options = orchestrator.begin_passkey_login()
        result = orchestrator.login(PasskeyAttempt(options.challenge, authenticator.assertion(options.challenge)))

        assert result.status is LoginStatus.AUTHENTICATED
        assert result.user_id == uid

    def test_counter_regression_is_flagged(self, orchestrator, store, passkeys, authenticator) -> None:
        uid = create_user(store, "ada")
        _register_passkey(passkeys, uid, authenticator)
        first = orchestrator.begin_passkey_login()
        orchestrator.login(PasskeyAttempt(first.challenge, authenticator.assertion(first.challenge, 5)))

        second = orchestrator.begin_passkey_login()
        result = orchestrator.login(PasskeyAttempt(second.challenge, authenticator.assertion(second.challenge, 5)))

        assert result.status is LoginStatus.REJECTED
        assert result.warning == CLONED_AUTHENTICATOR
        assert result.session is None

    def test_plain_rejection_has_no_warning(self, orchestrator, store, passkeys, authenticator) -> None:
        uid = create_user(store, "ada")
        _register_passkey(passkeys, uid, authenticator)
        options = orchestrator.begin_passkey_login()
        bad = authenticator.assertion(options.challenge, origin="https://evil.example")
        result = orchestrator.login(PasskeyAttempt(options.challenge, bad))
        assert result.status is LoginStatus.REJECTED
        assert result.warning is None


class TestSecondFactorGate:
    def test_enabled_totp_defers_session(self, orchestrator, store, two_factor, tokens, clock) -> None:
        uid = create_user(store, "ada")
        info = two_factor.begin_enrollment(uid)
        two_factor.confirm_enrollment(uid, pyotp.TOTP(info.secret).at(clock()))

        result = orchestrator.login(PasswordAttempt("ada", PASSWORD))

        assert result.status is LoginStatus.PENDING_SECOND_FACTOR
        assert result.session is None
        assert tokens.verify_pending_token(result.pending_token) == uid

        clock.advance(30)
        finished = two_factor.complete_login(result.pending_token, pyotp.TOTP(info.secret).at(clock()))
        assert finished.ok is True
        assert finished.session.user_id == uid

    def test_unconfirmed_enrollment_does_not_gate(self, orchestrator, store, two_factor) -> None:
        create_user(store, "ada")
        two_factor.begin_enrollment(store.get_user_by_username("ada").id)
        assert orchestrator.login(PasswordAttempt("ada", PASSWORD)).status is LoginStatus.AUTHENTICATED

    def test_failed_first_factor_never_reaches_second(self, orchestrator, store, two_factor, clock) -> None:
        uid = create_user(store, "ada")
        info = two_factor.begin_enrollment(uid)
        two_factor.confirm_enrollment(uid, pyotp.TOTP(info.secret).at(clock()))
        result = orchestrator.login(PasswordAttempt("ada", "wrong"))
        assert result.status is LoginStatus.REJECTED
        assert result.pending_token is None


def test_unknown_attempt_type(orchestrator) -> None:
    with pytest.raises(TypeError):
        orchestrator.login(object())
