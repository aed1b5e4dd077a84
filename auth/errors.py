"""
auth/errors.py -- Exceptions for domain conflicts and infrastructure faults.

Protocol rejections (wrong password, expired token, replayed counter, consumed
recovery code) are NOT exceptions. Services return None / False / a status
enum for those so callers can render one uniform "authentication failed"
response. Everything here is something the caller must handle differently:
a conflict the user can fix, or a dependency that is down.

Each class carries the machine-readable code and HTTP status the API layer
puts in its ErrorResponse envelope. Persistence faults are not wrapped; they
surface as sqlalchemy.exc.SQLAlchemyError and hit the catch-all 500 handler.
"""

from __future__ import annotations


class AuthServiceError(Exception):
    code = "auth_error"
    status_code = 400
    message = "Authentication service error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class UserNotFoundError(AuthServiceError):
    code = "user_not_found"
    status_code = 404
    message = "User not found."


class UnsupportedProviderError(AuthServiceError):
    code = "unsupported_provider"
    status_code = 400
    message = "SSO provider is not configured."


class InvalidOAuthCodeError(AuthServiceError):
    code = "invalid_oauth_code"
    status_code = 400
    message = "The identity provider rejected the authorization code."


class SSOBindingConflictError(AuthServiceError):
    code = "sso_binding_conflict"
    status_code = 409
    message = "This provider account is already bound."


class LastLoginMethodError(AuthServiceError):
    code = "last_login_method"
    status_code = 400
    message = "Cannot remove the only remaining login method for this account."


class DuplicatePasskeyError(AuthServiceError):
    code = "duplicate_passkey"
    status_code = 409
    message = "This passkey is already registered."


class TwoFactorAlreadyEnabledError(AuthServiceError):
    code = "two_factor_already_enabled"
    status_code = 409
    message = "Two-factor authentication is already enabled."


class TwoFactorNotPendingError(AuthServiceError):
    code = "two_factor_not_pending"
    status_code = 400
    message = "No pending two-factor enrollment. Start enrollment first."


class IdentityProviderUnavailableError(AuthServiceError):
    code = "identity_provider_unavailable"
    status_code = 502
    message = "The identity provider could not be reached."


class TwoFactorNotEnabledError(AuthServiceError):
    code = "two_factor_not_enabled"
    status_code = 404
    message = "Two-factor authentication is not enabled."


class UsernameTakenError(AuthServiceError):
    code = "username_taken"
    status_code = 409
    message = "A user with that username already exists."


class RegistrationDisabledError(AuthServiceError):
    code = "registration_disabled"
    status_code = 403
    message = "Account registration is disabled."
