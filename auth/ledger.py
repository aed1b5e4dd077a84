"""
auth/ledger.py -- SQLAlchemy Core persistence for token lineages.

A lineage is the revocation anchor for one login: every access token carries
its lineage id, and the single refresh token of the lineage is stored here by
SHA-256 hash. Revoking the lineage row invalidates every token that names it,
past and future, without having to enumerate them.

Rotation and revocation race on the same lineage. Both are single conditional
statements, so the database serializes them:
  revoke:  UPDATE token_lineages SET revoked_at = ? WHERE lineage_id = ? AND revoked_at IS NULL
  rotate:  UPDATE refresh_tokens SET expires_at = ?
           WHERE token_hash = ? AND expires_at > ? AND lineage_id IN (<live lineages>)
A logout that commits first makes the rotation match zero rows; a rotation
that commits first still mints only tokens that the logout then invalidates.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from sqlalchemy import Column, Integer, MetaData, String, Table, select
from sqlalchemy.engine import Engine

from auth.models import RefreshTokenRecord, TokenLineage
from auth.store import create_store_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_lineages = Table(
    "token_lineages",
    _metadata,
    Column("lineage_id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    Column("revoked_at", String(40)),  # NULL while the lineage is live
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # SHA-256 hex of the raw token
    Column("lineage_id", String(64), nullable=False, index=True),
    Column("user_id", Integer, nullable=False),
    Column("issued_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TokenLedger:
    """Repository for lineages and refresh tokens.

    All timestamps are passed in by TokenService so the ledger never reads a
    clock of its own.
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    def create_lineage(self, lineage_id: str, user_id: int, token_hash: str, issued_at: str, expires_at: str) -> None:
        """Persist a new lineage and its refresh token in one transaction."""
        with self.engine.connect() as conn:
            conn.execute(_lineages.insert().values(lineage_id=lineage_id, user_id=user_id, created_at=issued_at))
            conn.execute(
                _refresh_tokens.insert().values(
                    token_hash=token_hash,
                    lineage_id=lineage_id,
                    user_id=user_id,
                    issued_at=issued_at,
                    expires_at=expires_at,
                )
            )
            conn.commit()

    def get_lineage(self, lineage_id: str) -> TokenLineage | None:
        with self.engine.connect() as conn:
            row = conn.execute(_lineages.select().where(_lineages.c.lineage_id == lineage_id)).fetchone()
        if row is None:
            return None
        return TokenLineage(
            lineage_id=row.lineage_id,
            user_id=row.user_id,
            created_at=row.created_at,
            revoked_at=row.revoked_at,
        )

    def get_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        if row is None:
            return None
        return RefreshTokenRecord(
            token_hash=row.token_hash,
            lineage_id=row.lineage_id,
            user_id=row.user_id,
            issued_at=row.issued_at,
            expires_at=row.expires_at,
        )

    def extend_refresh_token(self, token_hash: str, now: str, new_expires_at: str) -> bool:
        """Slide a live refresh token's expiry forward.

        Returns False if the token is unknown, already expired at now, or its
        lineage has been revoked. The check and the write are one statement.
        """
        live_lineages = select(_lineages.c.lineage_id).where(_lineages.c.revoked_at.is_(None))
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.expires_at > now)
                    & (_refresh_tokens.c.lineage_id.in_(live_lineages))
                )
                .values(expires_at=new_expires_at)
            )
            conn.commit()
        return result.rowcount == 1

    def revoke_lineage(self, lineage_id: str, revoked_at: str) -> bool:
        """Mark a lineage revoked. Idempotent: returns True only on the first call."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _lineages.update()
                .where((_lineages.c.lineage_id == lineage_id) & (_lineages.c.revoked_at.is_(None)))
                .values(revoked_at=revoked_at)
            )
            conn.commit()
        return result.rowcount > 0

    def purge_expired(self, now: str) -> int:
        """Delete refresh tokens that expired before now. Lineage rows are kept."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
