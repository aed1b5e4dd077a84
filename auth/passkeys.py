"""
auth/passkeys.py -- WebAuthn-style passkey registration and authentication.

Both ceremonies follow challenge -> verify:

  Registration:    begin_registration(user_id)  -> RegistrationOptions
                   finish_registration(user_id, challenge, AttestationResponse)
  Authentication:  begin_authentication()       -> AuthenticationOptions (user-agnostic)
                   finish_authentication(challenge, AssertionResponse) -> PasskeyAuthResult

Verification of a response (either ceremony):
  1. The challenge row is consumed (DELETE ... RETURNING) before anything
     else, so it is single-use whether verification then passes or fails.
  2. clientDataJSON: type matches the ceremony, challenge matches, origin
     equals WEBAUTHN_RP_ORIGIN.
  3. authenticatorData: rpIdHash == SHA-256(WEBAUTHN_RP_ID), user-present set.
  4. signature over authenticatorData || SHA-256(clientDataJSON) verifies
     with the credential public key (ECDSA P-256, Ed25519, or RSA PKCS#1 v1.5,
     all with SHA-256) via the cryptography package.

Anti-replay: the assertion's signature counter must be strictly greater than
the stored counter, unless both are zero (some authenticators never count).
The new value is written with a compare-and-swap on the old one, so two
concurrent assertions carrying the same counter cannot both pass. A
regression is reported as COUNTER_REGRESSION and logged at WARNING: it
usually means a cloned authenticator.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicatePasskeyError, UserNotFoundError
from auth.models import (
    AssertionResponse,
    AttestationResponse,
    AuthenticationOptions,
    PasskeyAuthResult,
    PasskeyAuthStatus,
    PasskeyChallenge,
    PasskeyCredential,
    RegistrationOptions,
)
from auth.store import CredentialStore, iso_utc
from core.config import Settings, get_settings

logger = logging.getLogger("toolcraft.auth.passkeys")

_KIND_REGISTER = "register"
_KIND_AUTHENTICATE = "authenticate"

# authenticatorData flag bits
_FLAG_USER_PRESENT = 0x01
_FLAG_BACKUP_ELIGIBLE = 0x08
_FLAG_BACKUP_STATE = 0x10

# rpIdHash (32) + flags (1) + signCount (4)
_AUTH_DATA_MIN_LEN = 37


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url. Raises ValueError on malformed input."""
    try:
        return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
    except (binascii.Error, TypeError) as exc:
        raise ValueError("invalid base64url") from exc


@dataclass(frozen=True)
class _AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & _FLAG_USER_PRESENT)

    @property
    def backup_eligible(self) -> bool:
        return bool(self.flags & _FLAG_BACKUP_ELIGIBLE)

    @property
    def backup_state(self) -> bool:
        return bool(self.flags & _FLAG_BACKUP_STATE)


def _parse_authenticator_data(raw: bytes) -> _AuthenticatorData | None:
    if len(raw) < _AUTH_DATA_MIN_LEN:
        return None
    return _AuthenticatorData(
        rp_id_hash=raw[:32],
        flags=raw[32],
        sign_count=int.from_bytes(raw[33:37], "big"),
    )


def _verify_signature(public_key_der: bytes, signature: bytes, payload: bytes) -> bool:
    """Return True if signature is valid for payload under the SPKI public key."""
    try:
        key = load_der_public_key(public_key_der)
    except (ValueError, UnsupportedAlgorithm):
        return False
    try:
        if isinstance(key, ec.EllipticCurvePublicKey):
            if not isinstance(key.curve, ec.SECP256R1):
                return False
            key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
        elif isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, payload)
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
        else:
            return False
    except InvalidSignature:
        return False
    return True


class PasskeyCeremonyEngine:
    """Runs passkey ceremonies against the credential store.

    Usage:
        engine = PasskeyCeremonyEngine(store)
        options = engine.begin_registration(user_id)
        credential = engine.finish_registration(user_id, options.challenge, attestation)
        options = engine.begin_authentication()
        result = engine.finish_authentication(options.challenge, assertion)
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._rp_id_hash = hashlib.sha256(self._settings.webauthn_rp_id.encode("utf-8")).digest()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def begin_registration(self, user_id: int) -> RegistrationOptions:
        """Issue a registration challenge bound to user_id.

        Raises UserNotFoundError for an unknown user. Existing credential ids
        are returned so the browser can exclude authenticators already enrolled.
        """
        user = self._store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        challenge = self._new_challenge(_KIND_REGISTER, user_id)
        return RegistrationOptions(
            challenge=challenge,
            rp_id=self._settings.webauthn_rp_id,
            rp_name=self._settings.webauthn_rp_name,
            user_id=user_id,
            user_name=user.username,
            exclude_credential_ids=[p.credential_id for p in self._store.list_passkeys(user_id)],
            timeout_ms=self._settings.webauthn_challenge_ttl * 1000,
        )

    def finish_registration(
        self, user_id: int, challenge: str, response: AttestationResponse
    ) -> PasskeyCredential | None:
        """Verify an attestation and persist the new credential.

        Returns None when the challenge is unknown, expired, bound to another
        user, or the response fails verification. Raises DuplicatePasskeyError
        if the credential id is already registered.
        """
        record = self._consume(challenge, _KIND_REGISTER)
        if record is None or record.user_id != user_id:
            logger.info("Passkey registration rejected: bad challenge (user_id=%s)", user_id)
            return None
        try:
            public_key = b64url_decode(response.public_key)
            auth_data = self._verify_response(
                challenge,
                "webauthn.create",
                public_key,
                response.client_data_json,
                response.authenticator_data,
                response.signature,
            )
        except ValueError:
            auth_data = None
        if auth_data is None:
            logger.info("Passkey registration rejected: verification failed (user_id=%s)", user_id)
            return None

        if self._store.get_passkey_by_credential_id(response.credential_id) is not None:
            raise DuplicatePasskeyError()
        credential = PasskeyCredential(
            user_id=user_id,
            credential_id=response.credential_id,
            public_key=public_key,
            sign_count=auth_data.sign_count,
            aaguid=response.aaguid,
            transports=list(response.transports),
            device_name=response.device_name,
            backup_eligible=auth_data.backup_eligible,
            backup_state=auth_data.backup_state,
        )
        try:
            credential.id = self._store.create_passkey(credential)
        except IntegrityError as exc:
            raise DuplicatePasskeyError() from exc
        logger.info("Passkey registered (user_id=%s passkey_id=%s)", user_id, credential.id)
        return credential

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def begin_authentication(self) -> AuthenticationOptions:
        """Issue a user-agnostic challenge for discoverable-credential login."""
        challenge = self._new_challenge(_KIND_AUTHENTICATE, None)
        return AuthenticationOptions(
            challenge=challenge,
            rp_id=self._settings.webauthn_rp_id,
            timeout_ms=self._settings.webauthn_challenge_ttl * 1000,
        )

    def finish_authentication(self, challenge: str, response: AssertionResponse) -> PasskeyAuthResult:
        """Verify an assertion and resolve the owning user."""
        rejected = PasskeyAuthResult(PasskeyAuthStatus.REJECTED)
        if self._consume(challenge, _KIND_AUTHENTICATE) is None:
            logger.info("Passkey login rejected: bad challenge")
            return rejected
        credential = self._store.get_passkey_by_credential_id(response.credential_id)
        if credential is None:
            logger.info("Passkey login rejected: unknown credential")
            return rejected
        try:
            auth_data = self._verify_response(
                challenge,
                "webauthn.get",
                credential.public_key,
                response.client_data_json,
                response.authenticator_data,
                response.signature,
            )
        except ValueError:
            auth_data = None
        if auth_data is None:
            logger.info("Passkey login rejected: verification failed (passkey_id=%s)", credential.id)
            return rejected

        stored, presented = credential.sign_count, auth_data.sign_count
        if not (presented > stored or (presented == 0 and stored == 0)):
            return self._counter_regression(credential, stored, presented)
        if not self._store.update_passkey_usage(
            credential.id, stored, presented, iso_utc(self._clock()), auth_data.backup_state
        ):
            # Another assertion advanced the counter between our read and write.
            return self._counter_regression(credential, stored, presented)
        logger.info("Passkey login accepted (user_id=%s passkey_id=%s)", credential.user_id, credential.id)
        return PasskeyAuthResult(PasskeyAuthStatus.OK, credential.user_id)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_passkeys(self, user_id: int) -> list[PasskeyCredential]:
        return self._store.list_passkeys(user_id)

    def delete_passkey(self, user_id: int, passkey_id: int) -> bool:
        """Delete one of the user's passkeys.

        Returns False if the passkey does not exist or belongs to someone
        else. Raises LastLoginMethodError if it is the account's only way in;
        a stored password does not count while password login is switched off.
        """
        removed = self._store.delete_passkey(
            user_id, passkey_id, count_password=self._settings.enable_password_login
        )
        if removed:
            logger.info("Passkey deleted (user_id=%s passkey_id=%s)", user_id, passkey_id)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_challenge(self, kind: str, user_id: int | None) -> str:
        challenge = b64url_encode(secrets.token_bytes(32))
        expires = self._clock() + timedelta(seconds=self._settings.webauthn_challenge_ttl)
        self._store.save_challenge(
            PasskeyChallenge(challenge=challenge, kind=kind, user_id=user_id, expires_at=iso_utc(expires))
        )
        return challenge

    def _consume(self, challenge: str, kind: str) -> PasskeyChallenge | None:
        """Consume a challenge; None if it was unknown, already used, or expired."""
        if not challenge:
            return None
        record = self._store.consume_challenge(challenge, kind)
        if record is None or record.expires_at <= iso_utc(self._clock()):
            return None
        return record

    def _verify_response(
        self,
        challenge: str,
        expected_type: str,
        public_key: bytes,
        client_data_b64: str,
        auth_data_b64: str,
        signature_b64: str,
    ) -> _AuthenticatorData | None:
        """Run checks 2-4 from the module docstring. Raises ValueError on bad encoding."""
        client_data_raw = b64url_decode(client_data_b64)
        auth_data_raw = b64url_decode(auth_data_b64)
        signature = b64url_decode(signature_b64)

        try:
            client_data = json.loads(client_data_raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError("clientDataJSON is not JSON") from exc
        if not isinstance(client_data, dict):
            return None
        if client_data.get("type") != expected_type:
            return None
        if not hmac.compare_digest(str(client_data.get("challenge", "")).encode("utf-8"), challenge.encode("utf-8")):
            return None
        if client_data.get("origin") != self._settings.webauthn_rp_origin:
            return None

        auth_data = _parse_authenticator_data(auth_data_raw)
        if auth_data is None or not hmac.compare_digest(auth_data.rp_id_hash, self._rp_id_hash):
            return None
        if not auth_data.user_present:
            return None

        signed = auth_data_raw + hashlib.sha256(client_data_raw).digest()
        if not _verify_signature(public_key, signature, signed):
            return None
        return auth_data

    def _counter_regression(self, credential: PasskeyCredential, stored: int, presented: int) -> PasskeyAuthResult:
        logger.warning(
            "Passkey signature counter regression -- possible cloned authenticator "
            "(user_id=%s passkey_id=%s stored=%d presented=%d)",
            credential.user_id,
            credential.id,
            stored,
            presented,
        )
        return PasskeyAuthResult(PasskeyAuthStatus.COUNTER_REGRESSION)
