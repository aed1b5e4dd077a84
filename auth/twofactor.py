"""
auth/twofactor.py -- TOTP enrollment, second-factor login, and recovery codes.

TOTP: RFC 6238 via pyotp (SHA-1, 6 digits, 30 s step), issuer =
WEBAUTHN_RP_NAME so authenticator apps group it with the passkeys. A code is
accepted within +/- TOTP_VALID_WINDOW steps of now, and only if its step is
strictly newer than the last step accepted for that user. The store enforces
that with a conditional UPDATE, so a code is usable once even when two
requests race with it.

Secrets at rest: Fernet(user.encryption_key). The plaintext base32 secret
only leaves this module once, in the EnrollmentInfo returned to the user.

Recovery codes: RECOVERY_CODE_COUNT random codes minted at confirmation and
shown once. Only HMAC-SHA256(SECRET_KEY, normalized code) is stored, the same
keyed-hash scheme used for any high-entropy secret that needs O(1) lookup.
Consumption is a single DELETE; exactly one caller gets rowcount 1.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timezone

import pyotp
from cryptography.fernet import Fernet
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    TwoFactorAlreadyEnabledError,
    TwoFactorNotEnabledError,
    TwoFactorNotPendingError,
    UserNotFoundError,
)
from auth.models import EnrollmentInfo, SecondFactorResult, TwoFactorStatus, User
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import Settings, get_settings

logger = logging.getLogger("toolcraft.auth.twofactor")

_TOTP = "totp"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_recovery_code(code: str) -> str:
    """Lowercase and drop spaces and dashes so "ABCDE-12345" matches "abcde12345"."""
    return "".join(ch for ch in code.lower() if ch.isalnum())


def generate_recovery_code() -> str:
    """Return a code like "9f1c2-7ab03": 40 random bits, easy to copy by hand."""
    raw = secrets.token_hex(5)
    return f"{raw[:5]}-{raw[5:]}"


class TwoFactorService:
    """Second-factor lifecycle for one credential store.

    Usage:
        info = twofa.begin_enrollment(user_id)
        codes = twofa.confirm_enrollment(user_id, code_from_app)
        result = twofa.complete_login(pending_token, code_from_app)
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_enabled(self, user_id: int) -> bool:
        """True only when the user has a verified secret."""
        secret = self._store.get_two_factor_secret(user_id, _TOTP)
        return secret is not None and secret.verified

    def get_status(self, user_id: int) -> TwoFactorStatus:
        secret = self._store.get_two_factor_secret(user_id, _TOTP)
        if secret is None or not secret.verified:
            return TwoFactorStatus(enabled=False)
        return TwoFactorStatus(
            enabled=True,
            type=secret.type,
            created_at=secret.created_at,
            recovery_codes_remaining=self._store.count_recovery_codes(user_id),
        )

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def begin_enrollment(self, user_id: int) -> EnrollmentInfo:
        """Generate a new unverified TOTP secret, replacing any earlier unverified one.

        Raises TwoFactorAlreadyEnabledError if a verified secret exists. The
        user must delete it first.
        """
        user = self._require_user(user_id)
        if self.is_enabled(user_id):
            raise TwoFactorAlreadyEnabledError()
        secret = pyotp.random_base32()
        try:
            self._store.replace_pending_two_factor(user_id, self._encrypt(user, secret), _TOTP)
        except IntegrityError as exc:
            # A concurrent confirm flipped the secret to verified.
            raise TwoFactorAlreadyEnabledError() from exc
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=user.email or user.username,
            issuer_name=self._settings.webauthn_rp_name,
        )
        logger.info("TOTP enrollment started (user_id=%s)", user_id)
        return EnrollmentInfo(secret=secret, provisioning_uri=uri)

    def confirm_enrollment(self, user_id: int, code: str) -> list[str] | None:
        """Verify the first code from the pending secret and turn 2FA on.

        Returns the plaintext recovery codes (shown once) on success, None for
        a wrong code. Raises TwoFactorNotPendingError when there is nothing to
        confirm and TwoFactorAlreadyEnabledError when 2FA is already on.
        """
        user = self._require_user(user_id)
        pending = self._store.get_two_factor_secret(user_id, _TOTP)
        if pending is None:
            raise TwoFactorNotPendingError()
        if pending.verified:
            raise TwoFactorAlreadyEnabledError()
        step = self._match_step(self._decrypt(user, pending.secret), code)
        if step is None:
            logger.info("TOTP enrollment code rejected (user_id=%s)", user_id)
            return None
        codes = [generate_recovery_code() for _ in range(self._settings.recovery_code_count)]
        if not self._store.verify_two_factor(user_id, step, [self._hash_code(c) for c in codes], _TOTP):
            raise TwoFactorAlreadyEnabledError()
        logger.info("TOTP enabled (user_id=%s recovery_codes=%d)", user_id, len(codes))
        return codes

    def delete(self, user_id: int) -> bool:
        """Turn 2FA off: remove the secret and all remaining recovery codes."""
        removed = self._store.delete_two_factor(user_id)
        if removed:
            logger.info("Two-factor removed (user_id=%s)", user_id)
        return removed

    def delete_with_code(self, user_id: int, code: str) -> bool:
        """Turn 2FA off for a signed-in user who proves they still hold a factor.

        code is either a current TOTP code (spent like a login code) or one
        recovery code (consumed). Returns False for a wrong code. Raises
        TwoFactorNotEnabledError when there is no verified secret.
        """
        user = self._require_user(user_id)
        secret = self._store.get_two_factor_secret(user_id, _TOTP)
        if secret is None or not secret.verified:
            raise TwoFactorNotEnabledError()
        step = self._match_step(self._decrypt(user, secret.secret), code)
        if step is not None and self._store.advance_totp_step(user_id, step):
            method = "totp"
        elif normalize_recovery_code(code or "") and self._store.consume_recovery_code(
            user_id, self._hash_code(code)
        ):
            method = "recovery_code"
        else:
            logger.info("Two-factor removal code rejected (user_id=%s)", user_id)
            return False
        logger.info("Two-factor removal confirmed (user_id=%s method=%s)", user_id, method)
        return self.delete(user_id)

    # ------------------------------------------------------------------
    # Login completion
    # ------------------------------------------------------------------

    def complete_login(self, pending_token: str, code: str) -> SecondFactorResult:
        """Finish a pending login with a TOTP code and issue a session."""
        user_id = self._tokens.verify_pending_token(pending_token)
        if user_id is None:
            return SecondFactorResult(ok=False)
        user = self._store.get_user(user_id)
        secret = self._store.get_two_factor_secret(user_id, _TOTP)
        if user is None or secret is None or not secret.verified:
            return SecondFactorResult(ok=False)
        step = self._match_step(self._decrypt(user, secret.secret), code)
        if step is None:
            logger.info("TOTP login code rejected (user_id=%s)", user_id)
            return SecondFactorResult(ok=False)
        if not self._store.advance_totp_step(user_id, step):
            logger.info("TOTP login code replayed (user_id=%s step=%d)", user_id, step)
            return SecondFactorResult(ok=False)
        return SecondFactorResult(ok=True, session=self._tokens.issue_session(user_id))

    def complete_login_with_recovery_code(self, pending_token: str, code: str) -> SecondFactorResult:
        """Finish a pending login by spending one recovery code.

        The result reports how many codes remain. Zero means the user has just
        used the last one and must re-enroll to get a new batch.
        """
        user_id = self._consume_for_pending(pending_token, code)
        if user_id is None:
            return SecondFactorResult(ok=False)
        remaining = self._store.count_recovery_codes(user_id)
        if remaining == 0:
            logger.warning("Recovery codes exhausted (user_id=%s)", user_id)
        return SecondFactorResult(
            ok=True,
            session=self._tokens.issue_session(user_id),
            recovery_codes_remaining=remaining,
        )

    def disable_with_recovery_code(self, pending_token: str, code: str) -> bool:
        """Lost-authenticator path: spend a recovery code to remove 2FA.

        No session is issued; the user logs in again with the first factor
        alone afterwards.
        """
        user_id = self._consume_for_pending(pending_token, code)
        if user_id is None:
            return False
        self.delete(user_id)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _consume_for_pending(self, pending_token: str, code: str) -> int | None:
        user_id = self._tokens.verify_pending_token(pending_token)
        if user_id is None or not self.is_enabled(user_id):
            return None
        if not normalize_recovery_code(code or ""):
            return None
        if not self._store.consume_recovery_code(user_id, self._hash_code(code)):
            logger.info("Recovery code rejected (user_id=%s)", user_id)
            return None
        return user_id

    def _require_user(self, user_id: int) -> User:
        user = self._store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    def _match_step(self, secret: str, code: str) -> int | None:
        """Return the time step code matches within the window, or None."""
        code = (code or "").strip()
        if len(code) != 6 or not code.isdigit():
            return None
        totp = pyotp.TOTP(secret)
        current = totp.timecode(self._clock())
        window = self._settings.totp_valid_window
        for step in range(current - window, current + window + 1):
            if hmac.compare_digest(totp.generate_otp(step), code):
                return step
        return None

    def _hash_code(self, code: str) -> str:
        return hmac.new(
            self._settings.secret_key.encode("utf-8"),
            normalize_recovery_code(code).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def _encrypt(user: User, secret: str) -> str:
        return Fernet(user.encryption_key.encode("ascii")).encrypt(secret.encode("utf-8")).decode("ascii")

    @staticmethod
    def _decrypt(user: User, ciphertext: str) -> str:
        return Fernet(user.encryption_key.encode("ascii")).decrypt(ciphertext.encode("ascii")).decode("utf-8")
