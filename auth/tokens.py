"""
auth/tokens.py -- TokenService: access/refresh token pairs grouped by lineage.

Security design decisions:
  Access tokens: python-jose HS256 JWTs signed with SECRET_KEY, carrying
       user_id, lineage id ("lin"), token type ("typ"), iat, exp, and jti.
       Signature and expiry are checked locally, then the lineage is looked
       up in the ledger for revocation. That second read is the price of
       instant logout; the signature check alone would be cheaper but could
       not honour a revoked lineage before the token expires.

  Refresh tokens: opaque "rt-" + 256 random bits. Only SHA-256(raw) is stored,
       so a ledger dump cannot be replayed. A plain hash is enough here; the
       input has full entropy, unlike a password.

  Pending tokens: short-lived JWTs with typ="2fa_pending". They prove the
       first factor passed and carry nothing else. The type claim keeps a
       pending token from ever being accepted as an access token and the
       reverse.

Every rejection path (malformed, bad signature, expired, wrong type, revoked)
folds into None / False. Only ledger I/O errors escape as exceptions.

Expiry is checked against the injected clock rather than inside jose so
that tests and the ledger agree on what "now" is.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.ledger import TokenLedger
from auth.models import AccessClaims, Session
from auth.store import iso_utc
from core.config import Settings, get_settings

logger = logging.getLogger("toolcraft.auth.tokens")

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"
_PENDING_TYPE = "2fa_pending"
REFRESH_TOKEN_PREFIX = "rt-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(raw: str) -> str:
    """Return SHA-256(raw) as hex -- the ledger lookup key for a refresh token."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class TokenService:
    """Issues, rotates, validates, and revokes sessions.

    Usage:
        tokens = TokenService(TokenLedger(url))
        session = tokens.issue_session(user_id)
        claims, ok = tokens.validate_access_token(session.access_token)
        tokens.revoke_lineage(session.access_token)
    """

    def __init__(
        self,
        ledger: TokenLedger,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def issue_session(self, user_id: int) -> Session:
        """Start a new lineage and return its first access/refresh pair."""
        now = self._clock()
        lineage_id = uuid.uuid4().hex
        refresh_token = f"{REFRESH_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
        refresh_expires = now + timedelta(seconds=self._settings.refresh_token_ttl)
        self._ledger.create_lineage(
            lineage_id=lineage_id,
            user_id=user_id,
            token_hash=hash_refresh_token(refresh_token),
            issued_at=iso_utc(now),
            expires_at=iso_utc(refresh_expires),
        )
        access_token, access_expires = self._mint_access_token(user_id, lineage_id, now)
        logger.info("Session issued (user_id=%s lineage=%s)", user_id, lineage_id)
        return Session(
            user_id=user_id,
            lineage_id=lineage_id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires,
            refresh_expires_at=refresh_expires,
        )

    def rotate_access_token(self, refresh_token: str) -> tuple[str | None, bool]:
        """Exchange a live refresh token for a new access token in the same lineage.

        The refresh token value is kept; its expiry slides forward by
        REFRESH_TOKEN_TTL. Returns (None, False) for an unknown, expired, or
        revoked token.
        """
        if not refresh_token or not refresh_token.startswith(REFRESH_TOKEN_PREFIX):
            return None, False
        token_hash = hash_refresh_token(refresh_token)
        record = self._ledger.get_refresh_token(token_hash)
        if record is None:
            return None, False
        now = self._clock()
        new_expiry = now + timedelta(seconds=self._settings.refresh_token_ttl)
        if not self._ledger.extend_refresh_token(token_hash, iso_utc(now), iso_utc(new_expiry)):
            logger.info("Refresh rejected: expired or revoked (lineage=%s)", record.lineage_id)
            return None, False
        access_token, _ = self._mint_access_token(record.user_id, record.lineage_id, now)
        return access_token, True

    def validate_access_token(self, access_token: str) -> tuple[AccessClaims | None, bool]:
        """Return (claims, True) for a well-formed, unexpired, unrevoked access token."""
        payload = self._decode(access_token, _ACCESS_TYPE)
        if payload is None:
            return None, False
        lineage = self._ledger.get_lineage(payload["lin"])
        if lineage is None or lineage.revoked or lineage.user_id != payload["user_id"]:
            return None, False
        claims = AccessClaims(
            user_id=payload["user_id"],
            lineage_id=payload["lin"],
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_id=payload.get("jti", ""),
        )
        return claims, True

    def revoke_lineage(self, access_token: str) -> bool:
        """Revoke the lineage named by an authentic access token.

        Expiry is not required: an expired token still identifies its lineage,
        so logging out after the access token lapsed still kills the refresh
        token. Idempotent. Returns True if the token resolved to a lineage.
        """
        payload = self._decode(access_token, _ACCESS_TYPE, verify_exp=False)
        if payload is None:
            return False
        if self._ledger.revoke_lineage(payload["lin"], iso_utc(self._clock())):
            logger.info("Lineage revoked (user_id=%s lineage=%s)", payload["user_id"], payload["lin"])
        return True

    # ------------------------------------------------------------------
    # Pending second-factor tokens
    # ------------------------------------------------------------------

    def issue_pending_token(self, user_id: int) -> str:
        """Mint a short-lived token proving the first factor passed for user_id."""
        now = self._clock()
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "typ": _PENDING_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._settings.pending_token_ttl)).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._settings.secret_key, algorithm=_ALGORITHM)

    def verify_pending_token(self, token: str) -> int | None:
        """Return the user id a pending token was minted for, or None."""
        payload = self._decode(token, _PENDING_TYPE)
        if payload is None:
            return None
        return payload["user_id"]

    # ------------------------------------------------------------------
    # JWT encode / decode
    # ------------------------------------------------------------------

    def _mint_access_token(self, user_id: int, lineage_id: str, now: datetime) -> tuple[str, datetime]:
        expires = now + timedelta(seconds=self._settings.access_token_ttl)
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "lin": lineage_id,
            "typ": _ACCESS_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._settings.secret_key, algorithm=_ALGORITHM), expires

    def _decode(self, token: str, expected_type: str, verify_exp: bool = True) -> dict | None:
        """Verify signature and shape. Returns the payload dict or None on any failure."""
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._settings.secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        if payload.get("typ") != expected_type:
            return None
        if not isinstance(payload.get("user_id"), int) or not isinstance(payload.get("exp"), int):
            return None
        if expected_type == _ACCESS_TYPE and not payload.get("lin"):
            return None
        if verify_exp and payload["exp"] <= self._clock().timestamp():
            return None
        return payload
