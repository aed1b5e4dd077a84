"""Unit tests for auth/passkeys.py -- registration and authentication ceremonies.

Covers:
- register -> authenticate round trip with a real P-256 signature
- challenges are single-use, expire, and are bound to the registering user
- wrong origin, rpId, type, missing user-present flag, or bad signature reject
- duplicate credential ids raise DuplicatePasskeyError
- counter replay reports COUNTER_REGRESSION; zero/zero counters are allowed
- deleting the last login method is refused
"""

from __future__ import annotations

import logging

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from auth.errors import DuplicatePasskeyError, LastLoginMethodError, UserNotFoundError
from auth.models import AssertionResponse, PasskeyAuthStatus
from auth.passkeys import PasskeyCeremonyEngine, _verify_signature, b64url_decode, b64url_encode
from auth.store import CredentialStore
from tests.helpers import FakeAuthenticator, FrozenClock, create_user, make_test_settings


def _register(passkeys: PasskeyCeremonyEngine, user_id: int, authenticator: FakeAuthenticator, counter: int = 0):
    options = passkeys.begin_registration(user_id)
    return passkeys.finish_registration(user_id, options.challenge, authenticator.attest(options.challenge, counter))


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


class TestBase64Url:
    def test_unpadded_round_trip(self) -> None:
        encoded = b64url_encode(b"\xfb\xff")
        assert "=" not in encoded
        assert b64url_decode(encoded) == b"\xfb\xff"

    def test_malformed_input_raises_value_error(self) -> None:
        with pytest.raises(ValueError):
            b64url_decode("a")


def test_ed25519_signatures_verify() -> None:
    key = ed25519.Ed25519PrivateKey.generate()
    der = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    assert _verify_signature(der, key.sign(b"payload"), b"payload") is True
    assert _verify_signature(der, key.sign(b"payload"), b"tampered") is False
    assert _verify_signature(b"not a key", b"sig", b"payload") is False


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_register_stores_credential(self, passkeys, store: CredentialStore, authenticator) -> None:
        uid = create_user(store, "ada")
        credential = _register(passkeys, uid, authenticator)
        assert credential is not None
        assert credential.id is not None
        assert credential.device_name == "Test laptop"
        assert credential.transports == ["internal"]
        assert store.get_passkey_by_credential_id(authenticator.credential_id).user_id == uid

    def test_options_exclude_existing_credentials(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        options = passkeys.begin_registration(uid)
        assert options.exclude_credential_ids == [authenticator.credential_id]
        assert options.rp_id == "localhost"
        assert options.user_name == "ada"

    def test_unknown_user_raises(self, passkeys) -> None:
        with pytest.raises(UserNotFoundError):
            passkeys.begin_registration(999)

    def test_challenge_bound_to_user(self, passkeys, store, authenticator) -> None:
        ada = create_user(store, "ada")
        bob = create_user(store, "bob")
        options = passkeys.begin_registration(ada)
        assert passkeys.finish_registration(bob, options.challenge, authenticator.attest(options.challenge)) is None
        assert store.list_passkeys(bob) == []

    def test_challenge_single_use(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        options = passkeys.begin_registration(uid)
        bad = authenticator.attest(options.challenge, origin="https://evil.example")
        assert passkeys.finish_registration(uid, options.challenge, bad) is None
        # The failed attempt still burned the challenge.
        good = authenticator.attest(options.challenge)
        assert passkeys.finish_registration(uid, options.challenge, good) is None

    def test_expired_challenge_rejected(self, passkeys, store, authenticator, clock: FrozenClock) -> None:
        uid = create_user(store, "ada")
        options = passkeys.begin_registration(uid)
        clock.advance(301)
        assert passkeys.finish_registration(uid, options.challenge, authenticator.attest(options.challenge)) is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"origin": "https://evil.example"},
            {"rp_id": "evil.example"},
            {"flags": 0x04},  # user verified but not present
        ],
    )
    def test_bad_client_or_authenticator_data(self, passkeys, store, authenticator, overrides) -> None:
        uid = create_user(store, "ada")
        options = passkeys.begin_registration(uid)
        response = authenticator.attest(options.challenge, **overrides)
        assert passkeys.finish_registration(uid, options.challenge, response) is None

    def test_signature_from_other_key_rejected(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        options = passkeys.begin_registration(uid)
        forged = authenticator.attest(options.challenge)
        other = FakeAuthenticator()
        response = type(forged)(**{**forged.__dict__, "public_key": other.public_key})
        assert passkeys.finish_registration(uid, options.challenge, response) is None

    def test_garbage_encoding_rejected(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        options = passkeys.begin_registration(uid)
        forged = authenticator.attest(options.challenge)
        response = type(forged)(**{**forged.__dict__, "client_data_json": b64url_encode(b"not json")})
        assert passkeys.finish_registration(uid, options.challenge, response) is None

    def test_duplicate_credential_id(self, passkeys, store, authenticator) -> None:
        ada = create_user(store, "ada")
        bob = create_user(store, "bob")
        _register(passkeys, ada, authenticator)
        with pytest.raises(DuplicatePasskeyError):
            _register(passkeys, bob, authenticator)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    def test_register_then_authenticate(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)

        options = passkeys.begin_authentication()
        result = passkeys.finish_authentication(options.challenge, authenticator.assertion(options.challenge))

        assert result.ok is True
        assert result.user_id == uid
        stored = store.get_passkey_by_credential_id(authenticator.credential_id)
        assert stored.sign_count == 1
        assert stored.last_used_at is not None

    def test_same_challenge_twice_is_rejected(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        options = passkeys.begin_authentication()
        passkeys.finish_authentication(options.challenge, authenticator.assertion(options.challenge))

        replay = passkeys.finish_authentication(options.challenge, authenticator.assertion(options.challenge))
        assert replay.status is PasskeyAuthStatus.REJECTED

    def test_counter_regression_flags_clone(self, passkeys, store, authenticator, caplog) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        first = passkeys.begin_authentication()
        assert passkeys.finish_authentication(first.challenge, authenticator.assertion(first.challenge, 1)).ok

        second = passkeys.begin_authentication()
        with caplog.at_level(logging.WARNING, logger="toolcraft.auth.passkeys"):
            result = passkeys.finish_authentication(second.challenge, authenticator.assertion(second.challenge, 1))

        assert result.status is PasskeyAuthStatus.COUNTER_REGRESSION
        assert result.user_id is None
        assert "counter regression" in caplog.text
        assert store.get_passkey_by_credential_id(authenticator.credential_id).sign_count == 1

    def test_authenticator_without_counter(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        for _ in range(2):
            options = passkeys.begin_authentication()
            result = passkeys.finish_authentication(options.challenge, authenticator.assertion(options.challenge, 0))
            assert result.ok is True

    def test_unknown_credential(self, passkeys, store, authenticator) -> None:
        options = passkeys.begin_authentication()
        result = passkeys.finish_authentication(options.challenge, authenticator.assertion(options.challenge))
        assert result.status is PasskeyAuthStatus.REJECTED

    def test_unknown_challenge(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        result = passkeys.finish_authentication("made-up", authenticator.assertion("made-up"))
        assert result.status is PasskeyAuthStatus.REJECTED

    def test_registration_challenge_not_usable_for_login(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        options = passkeys.begin_registration(uid)
        result = passkeys.finish_authentication(options.challenge, authenticator.assertion(options.challenge))
        assert result.status is PasskeyAuthStatus.REJECTED

    def test_assertion_signed_for_other_challenge(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        options = passkeys.begin_authentication()
        other = passkeys.begin_authentication()
        result = passkeys.finish_authentication(options.challenge, authenticator.assertion(other.challenge))
        assert result.status is PasskeyAuthStatus.REJECTED

    def test_signature_tampering(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        _register(passkeys, uid, authenticator)
        options = passkeys.begin_authentication()
        assertion = authenticator.assertion(options.challenge)
        forged = AssertionResponse(
            credential_id=assertion.credential_id,
            client_data_json=assertion.client_data_json,
            authenticator_data=assertion.authenticator_data,
            signature=b64url_encode(b"\x00" * 70),
        )
        assert passkeys.finish_authentication(options.challenge, forged).status is PasskeyAuthStatus.REJECTED


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------


class TestManagement:
    def test_delete_with_password_still_set(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada")
        credential = _register(passkeys, uid, authenticator)
        assert passkeys.delete_passkey(uid, credential.id) is True
        assert passkeys.list_passkeys(uid) == []

    def test_delete_last_login_method_refused(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada", password=False)
        credential = _register(passkeys, uid, authenticator)
        with pytest.raises(LastLoginMethodError):
            passkeys.delete_passkey(uid, credential.id)
        assert len(passkeys.list_passkeys(uid)) == 1

    def test_delete_one_of_two_passkeys(self, passkeys, store, authenticator) -> None:
        uid = create_user(store, "ada", password=False)
        first = _register(passkeys, uid, authenticator)
        _register(passkeys, uid, FakeAuthenticator())
        assert passkeys.delete_passkey(uid, first.id) is True

    def test_delete_someone_elses_passkey(self, passkeys, store, authenticator) -> None:
        ada = create_user(store, "ada")
        bob = create_user(store, "bob")
        credential = _register(passkeys, ada, authenticator)
        assert passkeys.delete_passkey(bob, credential.id) is False
        assert len(passkeys.list_passkeys(ada)) == 1

    def test_password_does_not_count_when_password_login_is_off(self, store, clock, authenticator) -> None:
        engine = PasskeyCeremonyEngine(store, make_test_settings(enable_password_login=False), clock)
        uid = create_user(store, "ada")
        credential = _register(engine, uid, authenticator)
        with pytest.raises(LastLoginMethodError):
            engine.delete_passkey(uid, credential.id)
        assert len(engine.list_passkeys(uid)) == 1
