"""
tests/helpers.py -- Test doubles and small builders shared across test modules.

  FrozenClock          -- callable clock that only moves when told to
  FakeAuthenticator    -- software passkey signing real ECDSA P-256 responses
  FakeIdentityProvider -- SSO provider with a fixed code -> identity table
"""

from __future__ import annotations

import hashlib
import json
import secrets
from datetime import datetime, timedelta, timezone

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from auth.errors import IdentityProviderUnavailableError
from auth.models import AssertionResponse, AttestationResponse, ExternalIdentity, User
from auth.oauth import IdentityProvider
from auth.passkeys import b64url_encode
from auth.passwords import hash_password
from auth.store import CredentialStore
from core.config import Settings

PASSWORD = "correct horse battery staple"
# bcrypt is deliberately slow; hash once and reuse for every test user.
PASSWORD_HASH = hash_password(PASSWORD)

RP_ID = "localhost"
RP_ORIGIN = "http://localhost:8080"


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeAuthenticator:
    """A software passkey holding one ECDSA P-256 key.

    attest() and assertion() build the same byte layout a browser would send:
    clientDataJSON, authenticatorData (rpIdHash | flags | counter) and a
    signature over authenticatorData || SHA-256(clientDataJSON).
    """

    def __init__(self, rp_id: str = RP_ID, origin: str = RP_ORIGIN) -> None:
        self.rp_id = rp_id
        self.origin = origin
        self.credential_id = b64url_encode(secrets.token_bytes(16))
        self.counter = 0
        self._key = ec.generate_private_key(ec.SECP256R1())

    @property
    def public_key(self) -> str:
        der = self._key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return b64url_encode(der)

    def _sign(
        self,
        ceremony: str,
        challenge: str,
        counter: int,
        origin: str | None = None,
        rp_id: str | None = None,
        flags: int = 0x05,  # user present + user verified
    ) -> tuple[str, str, str]:
        client_data = json.dumps(
            {"type": ceremony, "challenge": challenge, "origin": origin or self.origin}
        ).encode("utf-8")
        auth_data = (
            hashlib.sha256((rp_id or self.rp_id).encode("utf-8")).digest()
            + bytes([flags])
            + counter.to_bytes(4, "big")
        )
        signature = self._key.sign(auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256()))
        return b64url_encode(client_data), b64url_encode(auth_data), b64url_encode(signature)

    def attest(self, challenge: str, counter: int = 0, **overrides) -> AttestationResponse:
        client_data, auth_data, signature = self._sign("webauthn.create", challenge, counter, **overrides)
        return AttestationResponse(
            credential_id=self.credential_id,
            public_key=self.public_key,
            client_data_json=client_data,
            authenticator_data=auth_data,
            signature=signature,
            transports=("internal",),
            device_name="Test laptop",
        )

    def assertion(self, challenge: str, counter: int | None = None, **overrides) -> AssertionResponse:
        """Sign an assertion. Without an explicit counter, the internal one is bumped."""
        if counter is None:
            self.counter += 1
            counter = self.counter
        client_data, auth_data, signature = self._sign("webauthn.get", challenge, counter, **overrides)
        return AssertionResponse(
            credential_id=self.credential_id,
            client_data_json=client_data,
            authenticator_data=auth_data,
            signature=signature,
        )


class FakeIdentityProvider(IdentityProvider):
    """Provider whose code exchange is a dict lookup. Unknown codes are rejected."""

    def __init__(self, name: str = "github", label: str = "GitHub") -> None:
        super().__init__(client_id="test-client", client_secret="test-secret")
        self.name = name
        self.label = label
        self.identities: dict[str, ExternalIdentity] = {}
        self.unavailable = False

    def add_code(self, code: str, provider_user_id: str, username: str = "", email: str | None = None) -> None:
        self.identities[code] = ExternalIdentity(
            provider=self.name,
            provider_user_id=provider_user_id,
            username=username,
            email=email,
        )

    def exchange_code(self, code: str) -> ExternalIdentity | None:
        if self.unavailable:
            raise IdentityProviderUnavailableError()
        return self.identities.get(code)

    def _fetch_identity(self, session) -> ExternalIdentity | None:
        return None


def make_test_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "test-secret-key-" + "x" * 32,
        "webauthn_rp_id": RP_ID,
        "webauthn_rp_origin": RP_ORIGIN,
        "webauthn_rp_name": "Toolcraft Test",
    }
    values.update(overrides)
    return Settings(**values)


def create_user(store: CredentialStore, username: str, password: bool = True, email: str | None = None) -> int:
    return store.create_user(
        User(username=username, email=email, hashed_password=PASSWORD_HASH if password else None)
    )
