"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work. The API layer maps these onto its
own Pydantic models in api/models.py.

Timestamps are ISO 8601 UTC strings, exactly as the stores persist them.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """The identity anchor every credential hangs off.

    hashed_password is None for SSO-only and passkey-only accounts.
    encryption_key is a per-user Fernet key that encrypts the TOTP secret at
    rest; the store generates one on insert when it is not supplied.
    Users are never merged: two accounts stay two accounts even when they
    share an email address.
    """

    username: str
    id: int | None = None
    email: str | None = None
    hashed_password: str | None = None
    roles: list[str] = field(default_factory=lambda: ["user"])
    encryption_key: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class SSOBinding:
    """Link between a local user and one external identity-provider account.

    (provider, provider_user_id) maps to at most one user, and a user holds at
    most one binding per provider. Both rules are UNIQUE constraints in the
    store so concurrent binds cannot both succeed.
    """

    user_id: int
    provider: str  # "github", "google"
    provider_user_id: str  # provider's stable account ID
    provider_username: str = ""
    provider_email: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class PasskeyCredential:
    """A registered WebAuthn public-key credential.

    credential_id is the base64url credential identifier chosen by the
    authenticator and is globally unique. public_key is SubjectPublicKeyInfo
    DER. sign_count never decreases across successful authentications.
    """

    user_id: int
    credential_id: str
    public_key: bytes
    sign_count: int = 0
    aaguid: str | None = None
    transports: list[str] = field(default_factory=list)
    device_name: str = ""
    backup_eligible: bool = False
    backup_state: bool = False
    id: int | None = None
    created_at: str | None = None
    last_used_at: str | None = None


@dataclass
class PasskeyChallenge:
    """An outstanding ceremony challenge. Consumed exactly once."""

    challenge: str
    kind: str  # "register" or "authenticate"
    expires_at: str
    user_id: int | None = None  # None for user-agnostic authentication


@dataclass
class TwoFactorSecret:
    """A second-factor secret. Only verified secrets gate or satisfy login.

    secret holds the Fernet ciphertext, never the plaintext base32 value.
    last_used_step is the most recent TOTP time step accepted for this user.
    """

    user_id: int
    secret: str
    type: str = "totp"
    verified: bool = False
    last_used_step: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class TokenLineage:
    """Revocation anchor shared by every token minted for one login."""

    lineage_id: str
    user_id: int
    created_at: str
    revoked_at: str | None = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class RefreshTokenRecord:
    """Ledger row for an opaque refresh token. Only the SHA-256 hash is kept."""

    token_hash: str
    lineage_id: str
    user_id: int
    issued_at: str
    expires_at: str


# ---------------------------------------------------------------------------
# Value objects returned by services
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Session:
    """An access/refresh token pair minted together under one lineage."""

    user_id: int
    lineage_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    user_id: int
    lineage_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class ExternalIdentity:
    """A verified profile returned by an identity provider after code exchange."""

    provider: str
    provider_user_id: str
    username: str = ""
    email: str | None = None


@dataclass(frozen=True)
class RegistrationOptions:
    """Everything a browser needs to call navigator.credentials.create()."""

    challenge: str
    rp_id: str
    rp_name: str
    user_id: int
    user_name: str
    exclude_credential_ids: list[str]
    timeout_ms: int


@dataclass(frozen=True)
class AuthenticationOptions:
    """Everything a browser needs to call navigator.credentials.get()."""

    challenge: str
    rp_id: str
    timeout_ms: int


@dataclass(frozen=True)
class AttestationResponse:
    """Registration response from the browser. Binary fields are base64url.

    public_key is the SPKI DER returned by AuthenticatorAttestationResponse
    .getPublicKey(); signature is the authenticator's self-attestation over
    authenticator_data || SHA-256(client_data_json).
    """

    credential_id: str
    public_key: str
    client_data_json: str
    authenticator_data: str
    signature: str
    transports: tuple[str, ...] = ()
    aaguid: str | None = None
    device_name: str = ""


@dataclass(frozen=True)
class AssertionResponse:
    """Authentication response from the browser. Binary fields are base64url."""

    credential_id: str
    client_data_json: str
    authenticator_data: str
    signature: str


class PasskeyAuthStatus(str, Enum):
    OK = "ok"
    REJECTED = "rejected"
    COUNTER_REGRESSION = "counter_regression"


@dataclass(frozen=True)
class PasskeyAuthResult:
    status: PasskeyAuthStatus
    user_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is PasskeyAuthStatus.OK


@dataclass(frozen=True)
class EnrollmentInfo:
    """A freshly generated, not yet verified TOTP secret."""

    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class SecondFactorResult:
    """Outcome of completing a login with a TOTP or recovery code.

    recovery_codes_remaining is only set for recovery-code logins. Reaching
    zero is a distinct state the caller must surface so the user re-enrolls.
    """

    ok: bool
    session: Session | None = None
    recovery_codes_remaining: int | None = None

    @property
    def recovery_codes_exhausted(self) -> bool:
        return self.recovery_codes_remaining == 0


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    type: str | None = None
    created_at: str | None = None
    recovery_codes_remaining: int = 0


# ---------------------------------------------------------------------------
# Login attempts (tagged union) and outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordAttempt:
    username: str
    password: str


@dataclass(frozen=True)
class SSOAttempt:
    provider: str
    code: str


@dataclass(frozen=True)
class PasskeyAttempt:
    challenge: str
    response: AssertionResponse


LoginAttempt = PasswordAttempt | SSOAttempt | PasskeyAttempt


class LoginStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    PENDING_SECOND_FACTOR = "pending_second_factor"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LoginResult:
    """Terminal state of one pass through the login state machine.

    warning is set only for rejections that deserve a specific signal, e.g.
    "cloned_authenticator" for a passkey signature counter regression.
    """

    status: LoginStatus
    user_id: int | None = None
    session: Session | None = None
    pending_token: str | None = None
    warning: str | None = None
