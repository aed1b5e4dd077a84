"""
API request and response models for the Toolcraft credential service.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import (
    AssertionResponse,
    AttestationResponse,
    PasskeyCredential,
    RegistrationOptions,
    Session,
    SSOBinding,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# base64url alphabet, no padding
B64URL_PATTERN = r"^[A-Za-z0-9_-]+$"

# Registration usernames: letters, digits, and . _ @ -
USERNAME_PATTERN = r"^[A-Za-z0-9._@-]+$"

# bcrypt only reads the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Account registration
# ---------------------------------------------------------------------------


class UserCreateRequest(BaseModel):
    """Request body for POST /api/v1/user/create."""

    username: str = Field(min_length=3, max_length=64, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=BCRYPT_MAX_BYTES)
    email: Optional[str] = Field(default=None, max_length=320)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes")
        return value


class UsernameCheckRequest(BaseModel):
    """Request body for POST /api/v1/user/check."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Login requests
# ---------------------------------------------------------------------------


class PasswordLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    # max_length keeps input well under bcrypt's 72-byte truncation for typical passwords
    password: str = Field(min_length=1, max_length=255)


class SSOLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/sso/{provider}/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=2048)


class PasskeyAssertionModel(BaseModel):
    """Browser assertion from navigator.credentials.get(), binary fields base64url."""

    credential_id: str = Field(min_length=1, max_length=1024, pattern=B64URL_PATTERN)
    client_data_json: str = Field(min_length=1, max_length=8192, pattern=B64URL_PATTERN)
    authenticator_data: str = Field(min_length=1, max_length=8192, pattern=B64URL_PATTERN)
    signature: str = Field(min_length=1, max_length=2048, pattern=B64URL_PATTERN)

    def to_domain(self) -> AssertionResponse:
        return AssertionResponse(
            credential_id=self.credential_id,
            client_data_json=self.client_data_json,
            authenticator_data=self.authenticator_data,
            signature=self.signature,
        )


class PasskeyLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/passkeys/login."""

    challenge: str = Field(min_length=1, max_length=128)
    response: PasskeyAssertionModel


class SecondFactorLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/2fa/login and /2fa/login/recovery."""

    model_config = ConfigDict(str_strip_whitespace=True)

    pending_token: str = Field(min_length=1, max_length=4096)
    code: str = Field(min_length=1, max_length=64)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/token/refresh."""

    refresh_token: str = Field(min_length=1, max_length=256)


# ---------------------------------------------------------------------------
# Credential management requests
# ---------------------------------------------------------------------------


class PasskeyAttestationModel(BaseModel):
    """Browser attestation from navigator.credentials.create().

    public_key is the SPKI DER from AuthenticatorAttestationResponse.getPublicKey().
    """

    credential_id: str = Field(min_length=1, max_length=1024, pattern=B64URL_PATTERN)
    public_key: str = Field(min_length=1, max_length=4096, pattern=B64URL_PATTERN)
    client_data_json: str = Field(min_length=1, max_length=8192, pattern=B64URL_PATTERN)
    authenticator_data: str = Field(min_length=1, max_length=8192, pattern=B64URL_PATTERN)
    signature: str = Field(min_length=1, max_length=2048, pattern=B64URL_PATTERN)
    transports: list[str] = Field(default_factory=list, max_length=8)
    aaguid: Optional[str] = Field(default=None, max_length=36)
    device_name: str = Field(default="", max_length=255)

    @field_validator("transports")
    @classmethod
    def transports_have_no_commas(cls, value: list[str]) -> list[str]:
        for transport in value:
            if not transport or "," in transport or len(transport) > 32:
                raise ValueError("each transport must be 1-32 characters without commas")
        return value

    def to_domain(self) -> AttestationResponse:
        return AttestationResponse(
            credential_id=self.credential_id,
            public_key=self.public_key,
            client_data_json=self.client_data_json,
            authenticator_data=self.authenticator_data,
            signature=self.signature,
            transports=tuple(self.transports),
            aaguid=self.aaguid,
            device_name=self.device_name,
        )


class PasskeyRegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/passkeys/register."""

    challenge: str = Field(min_length=1, max_length=128)
    response: PasskeyAttestationModel


class TotpCodeRequest(BaseModel):
    """Request body for POST /api/v1/auth/2fa/totp/confirm."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=6, pattern=r"^\d{6}$")


class TwoFactorCodeRequest(BaseModel):
    """Request body for DELETE /api/v1/auth/2fa: a TOTP code or a recovery code."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=64)


class SSOBindingCreate(BaseModel):
    """Request body for POST /api/v1/auth/sso/bindings."""

    model_config = ConfigDict(str_strip_whitespace=True)

    provider: str = Field(min_length=1, max_length=30)
    code: str = Field(min_length=1, max_length=2048)


# ---------------------------------------------------------------------------
# Session responses
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for every login endpoint.

    status is "authenticated" (tokens present) or "pending_second_factor"
    (pending_token present; finish via /auth/2fa/login). user_id is only
    set once the user is authenticated.
    recovery_codes_remaining is only set after a recovery-code login.
    """

    model_config = ConfigDict(frozen=True)

    status: str
    user_id: Optional[int] = None
    token_type: str = "bearer"
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    pending_token: Optional[str] = None
    recovery_codes_remaining: Optional[int] = None
    recovery_codes_exhausted: Optional[bool] = None

    @classmethod
    def from_session(cls, session: Session, **extra) -> "LoginResponse":
        return cls(
            status="authenticated",
            user_id=session.user_id,
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_at=session.access_expires_at,
            refresh_expires_at=session.refresh_expires_at,
            **extra,
        )


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"


class SessionResponse(BaseModel):
    """Response for GET /api/v1/auth/session -- the verified access-token claims."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    lineage_id: str
    issued_at: datetime
    expires_at: datetime


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    email: Optional[str]
    roles: list[str]
    has_password: bool
    two_factor_enabled: bool


# ---------------------------------------------------------------------------
# Account responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """A newly registered account. The password hash is never returned."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    email: Optional[str]
    created_at: Optional[str]


class UsernameCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    exists: bool


# ---------------------------------------------------------------------------
# Passkey responses
# ---------------------------------------------------------------------------


class RegistrationOptionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    challenge: str
    rp_id: str
    rp_name: str
    user_id: int
    user_name: str
    exclude_credential_ids: list[str]
    timeout_ms: int

    @classmethod
    def from_domain(cls, options: RegistrationOptions) -> "RegistrationOptionsResponse":
        return cls(
            challenge=options.challenge,
            rp_id=options.rp_id,
            rp_name=options.rp_name,
            user_id=options.user_id,
            user_name=options.user_name,
            exclude_credential_ids=options.exclude_credential_ids,
            timeout_ms=options.timeout_ms,
        )


class AuthenticationOptionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    challenge: str
    rp_id: str
    timeout_ms: int


class PasskeyResponse(BaseModel):
    """A registered passkey. Key material is never returned."""

    model_config = ConfigDict(frozen=True)

    id: int
    credential_id: str
    device_name: str
    aaguid: Optional[str]
    transports: list[str]
    sign_count: int
    backup_eligible: bool
    backup_state: bool
    created_at: Optional[str]
    last_used_at: Optional[str]

    @classmethod
    def from_domain(cls, credential: PasskeyCredential) -> "PasskeyResponse":
        return cls(
            id=credential.id,
            credential_id=credential.credential_id,
            device_name=credential.device_name,
            aaguid=credential.aaguid,
            transports=credential.transports,
            sign_count=credential.sign_count,
            backup_eligible=credential.backup_eligible,
            backup_state=credential.backup_state,
            created_at=credential.created_at,
            last_used_at=credential.last_used_at,
        )


# ---------------------------------------------------------------------------
# Two-factor responses
# ---------------------------------------------------------------------------


class TotpEnrollmentResponse(BaseModel):
    """Secret and otpauth:// URI for QR rendering. Shown once."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str


class RecoveryCodesResponse(BaseModel):
    """Plaintext recovery codes. Shown once and never retrievable again."""

    model_config = ConfigDict(frozen=True)

    recovery_codes: list[str]


class TwoFactorStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    type: Optional[str] = None
    created_at: Optional[str] = None
    recovery_codes_remaining: int = 0


# ---------------------------------------------------------------------------
# SSO responses
# ---------------------------------------------------------------------------


class SSOProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class SSOBindingResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    provider_user_id: str
    provider_username: str
    provider_email: Optional[str]
    created_at: Optional[str]

    @classmethod
    def from_domain(cls, binding: SSOBinding) -> "SSOBindingResponse":
        return cls(
            provider=binding.provider,
            provider_user_id=binding.provider_user_id,
            provider_username=binding.provider_username,
            provider_email=binding.provider_email,
            created_at=binding.created_at,
        )


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
