"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Services never touch SQL directly.

The store is pure data access. It holds no protocol logic beyond the atomic
conditional writes the services rely on for race safety:
  - passkey counter:     UPDATE ... WHERE id = ? AND sign_count = ?  (CAS)
  - TOTP step:           UPDATE ... WHERE last_used_step IS NULL OR last_used_step < ?
  - recovery code:       DELETE ... WHERE user_id = ? AND code_hash = ?
  - ceremony challenge:  DELETE ... RETURNING  (delete-and-check in one statement)
  - passkey / binding:   DELETE, recount login methods, roll back if none remain
Each returns whether this caller won, so two concurrent requests can never
both accept the same counter, step, code, or challenge.

Security:
  All queries use bound parameters. No f-strings in SQL.
  UNIQUE(provider, provider_user_id) and UNIQUE(user_id, provider) on
  sso_bindings, UNIQUE(credential_id) on passkeys, and UNIQUE(user_id, type)
  on two_factor_secrets back the service-level checks against races.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from cryptography.fernet import Fernet
from sqlalchemy import (
    Column,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.errors import LastLoginMethodError
from auth.models import PasskeyChallenge, PasskeyCredential, SSOBinding, TwoFactorSecret, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(320)),
    Column("hashed_password", Text),  # NULL for SSO-only / passkey-only users
    Column("roles", String(255), nullable=False, server_default="user"),  # comma-separated
    Column("encryption_key", String(64), nullable=False),  # per-user Fernet key
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_sso_bindings = Table(
    "sso_bindings",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("provider_username", String(255), nullable=False, server_default=""),
    Column("provider_email", String(320)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_sso_provider_identity"),
    UniqueConstraint("user_id", "provider", name="uq_sso_user_provider"),
)

_passkeys = Table(
    "passkeys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("credential_id", String(1024), nullable=False, unique=True),  # base64url
    Column("public_key", LargeBinary, nullable=False),  # SPKI DER
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("aaguid", String(36)),
    Column("transports", String(255), nullable=False, server_default=""),  # comma-separated
    Column("device_name", String(255), nullable=False, server_default=""),
    Column("backup_eligible", Integer, nullable=False, server_default="0"),
    Column("backup_state", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("last_used_at", String(40)),
)

_passkey_challenges = Table(
    "passkey_challenges",
    _metadata,
    Column("challenge", String(128), primary_key=True),
    Column("kind", String(20), nullable=False),  # "register" / "authenticate"
    Column("user_id", Integer),  # NULL for user-agnostic authentication
    Column("expires_at", String(40), nullable=False),
)

_two_factor_secrets = Table(
    "two_factor_secrets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("type", String(20), nullable=False, server_default="totp"),
    Column("secret", Text, nullable=False),  # Fernet ciphertext
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("last_used_step", Integer),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    UniqueConstraint("user_id", "type", name="uq_two_factor_user_type"),
)

_recovery_codes = Table(
    "recovery_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("user_id", "code_hash", name="uq_recovery_user_hash"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL lets readers proceed without blocking during writes. Set per-connection
    because SQLite PRAGMAs are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Build an Engine for db_url, with the SQLite tweaks both stores need."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def iso_utc(moment: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO string.

    timespec is pinned so stored values compare correctly as plain strings
    (isoformat() drops the fraction when microsecond == 0).
    """
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return iso_utc(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users and every per-user secret.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        uid = store.create_user(User(username="ada", hashed_password=hash_password("secret")))
        user = store.get_user(uid)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    roles=",".join(user.roles),
                    encryption_key=user.encryption_key or Fernet.generate_key().decode("ascii"),
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_login_methods(self, user_id: int, count_password: bool = True) -> int:
        """Return how many independent first factors the user can log in with.

        A password counts once, and only when count_password is set (password
        login can be switched off); every passkey and every SSO binding counts
        individually. Used to refuse deleting an account's last way in.
        """
        with self.engine.connect() as conn:
            return _login_methods(conn, user_id, count_password)

    # ------------------------------------------------------------------
    # SSO bindings
    # ------------------------------------------------------------------

    def create_sso_binding(self, binding: SSOBinding) -> int:
        """Insert a binding and return its ID.

        Raises sqlalchemy.exc.IntegrityError when either uniqueness rule is
        violated; the caller maps that onto a conflict.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _sso_bindings.insert().values(
                    user_id=binding.user_id,
                    provider=binding.provider,
                    provider_user_id=binding.provider_user_id,
                    provider_username=binding.provider_username,
                    provider_email=binding.provider_email,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_sso_binding(self, provider: str, provider_user_id: str) -> SSOBinding | None:
        """Look up the binding for an external identity. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sso_bindings.select().where(
                    (_sso_bindings.c.provider == provider) & (_sso_bindings.c.provider_user_id == provider_user_id)
                )
            ).fetchone()
        return _row_to_sso_binding(row) if row is not None else None

    def get_user_sso_binding(self, user_id: int, provider: str) -> SSOBinding | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sso_bindings.select().where(
                    (_sso_bindings.c.user_id == user_id) & (_sso_bindings.c.provider == provider)
                )
            ).fetchone()
        return _row_to_sso_binding(row) if row is not None else None

    def list_sso_bindings(self, user_id: int) -> list[SSOBinding]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sso_bindings.select().where(_sso_bindings.c.user_id == user_id).order_by(_sso_bindings.c.provider)
            ).fetchall()
        return [_row_to_sso_binding(r) for r in rows]

    def delete_sso_binding(self, user_id: int, provider: str, count_password: bool = True) -> bool:
        """Remove a user's binding for provider. Returns True if a row was deleted.

        Raises LastLoginMethodError, with nothing deleted, when the binding was
        the user's last login method. See _delete_login_method().
        """
        return self._delete_login_method(
            _sso_bindings.delete().where((_sso_bindings.c.user_id == user_id) & (_sso_bindings.c.provider == provider)),
            user_id,
            count_password,
        )

    # ------------------------------------------------------------------
    # Passkeys
    # ------------------------------------------------------------------

    def create_passkey(self, credential: PasskeyCredential) -> int:
        """Insert a passkey and return its ID.

        Raises sqlalchemy.exc.IntegrityError if credential_id is already registered.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _passkeys.insert().values(
                    user_id=credential.user_id,
                    credential_id=credential.credential_id,
                    public_key=credential.public_key,
                    sign_count=credential.sign_count,
                    aaguid=credential.aaguid,
                    transports=",".join(credential.transports),
                    device_name=credential.device_name,
                    backup_eligible=1 if credential.backup_eligible else 0,
                    backup_state=1 if credential.backup_state else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_passkey_by_credential_id(self, credential_id: str) -> PasskeyCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_passkeys.select().where(_passkeys.c.credential_id == credential_id)).fetchone()
        return _row_to_passkey(row) if row is not None else None

    def list_passkeys(self, user_id: int) -> list[PasskeyCredential]:
        """Return a user's passkeys, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _passkeys.select().where(_passkeys.c.user_id == user_id).order_by(_passkeys.c.id)
            ).fetchall()
        return [_row_to_passkey(r) for r in rows]

    def delete_passkey(self, user_id: int, passkey_id: int, count_password: bool = True) -> bool:
        """Delete a passkey. user_id is checked so one user cannot delete another's key.

        Raises LastLoginMethodError, with nothing deleted, when the passkey was
        the user's last login method.
        """
        return self._delete_login_method(
            _passkeys.delete().where((_passkeys.c.id == passkey_id) & (_passkeys.c.user_id == user_id)),
            user_id,
            count_password,
        )

    def _delete_login_method(self, statement, user_id: int, count_password: bool) -> bool:
        """Run a passkey or binding DELETE unless it leaves the user locked out.

        DELETE first, then count, in one transaction. On SQLite the DELETE takes
        the write lock; other backends lock the users row FOR UPDATE before the
        recount. Either way two deletes for one user recount one after the other.
        """
        with self.engine.connect() as conn:
            result = conn.execute(statement)
            if result.rowcount == 0:
                conn.rollback()
                return False
            if _login_methods(conn, user_id, count_password, lock=True) == 0:
                conn.rollback()
                raise LastLoginMethodError()
            conn.commit()
        return True

    def update_passkey_usage(
        self,
        passkey_id: int,
        expected_count: int,
        new_count: int,
        used_at: str,
        backup_state: bool,
    ) -> bool:
        """Compare-and-swap the signature counter and stamp last_used_at.

        The update only applies while sign_count still equals expected_count.
        Returns False when another request advanced the counter first.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _passkeys.update()
                .where((_passkeys.c.id == passkey_id) & (_passkeys.c.sign_count == expected_count))
                .values(sign_count=new_count, last_used_at=used_at, backup_state=1 if backup_state else 0)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Ceremony challenges
    # ------------------------------------------------------------------

    def save_challenge(self, challenge: PasskeyChallenge) -> None:
        """Persist a new challenge.

        A registration challenge replaces any outstanding registration
        challenge for the same user, so only the latest begin call is honoured.
        """
        with self.engine.connect() as conn:
            if challenge.kind == "register" and challenge.user_id is not None:
                conn.execute(
                    _passkey_challenges.delete().where(
                        (_passkey_challenges.c.kind == "register")
                        & (_passkey_challenges.c.user_id == challenge.user_id)
                    )
                )
            conn.execute(
                _passkey_challenges.insert().values(
                    challenge=challenge.challenge,
                    kind=challenge.kind,
                    user_id=challenge.user_id,
                    expires_at=challenge.expires_at,
                )
            )
            conn.commit()

    def consume_challenge(self, challenge: str, kind: str) -> PasskeyChallenge | None:
        """Atomically delete a challenge and return it, or None if absent.

        Expiry is NOT checked here; the caller compares expires_at against its
        own clock. Either way the row is gone once this returns.
        """
        with self.engine.connect() as conn:
            # fetchall() drains the statement before commit; SQLite refuses to
            # commit while a RETURNING cursor is still open.
            rows = conn.execute(
                _passkey_challenges.delete()
                .where((_passkey_challenges.c.challenge == challenge) & (_passkey_challenges.c.kind == kind))
                .returning(
                    _passkey_challenges.c.challenge,
                    _passkey_challenges.c.kind,
                    _passkey_challenges.c.user_id,
                    _passkey_challenges.c.expires_at,
                )
            ).fetchall()
            conn.commit()
        if not rows:
            return None
        row = rows[0]
        return PasskeyChallenge(
            challenge=row.challenge,
            kind=row.kind,
            user_id=row.user_id,
            expires_at=row.expires_at,
        )

    def purge_expired_challenges(self, now: str) -> int:
        """Delete challenges that expired before now. Returns the count removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_passkey_challenges.delete().where(_passkey_challenges.c.expires_at <= now))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Two-factor secrets
    # ------------------------------------------------------------------

    def replace_pending_two_factor(self, user_id: int, encrypted_secret: str, factor_type: str = "totp") -> None:
        """Store a new unverified secret, discarding any previous unverified one.

        A verified secret is never touched: the insert then hits the
        UNIQUE(user_id, type) constraint and raises IntegrityError.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _two_factor_secrets.delete().where(
                    (_two_factor_secrets.c.user_id == user_id)
                    & (_two_factor_secrets.c.type == factor_type)
                    & (_two_factor_secrets.c.verified == 0)
                )
            )
            conn.execute(
                _two_factor_secrets.insert().values(
                    user_id=user_id,
                    type=factor_type,
                    secret=encrypted_secret,
                    verified=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()

    def get_two_factor_secret(self, user_id: int, factor_type: str = "totp") -> TwoFactorSecret | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _two_factor_secrets.select().where(
                    (_two_factor_secrets.c.user_id == user_id) & (_two_factor_secrets.c.type == factor_type)
                )
            ).fetchone()
        return _row_to_two_factor(row) if row is not None else None

    def verify_two_factor(self, user_id: int, step: int, code_hashes: list[str], factor_type: str = "totp") -> bool:
        """Flip a pending secret to verified and store its recovery codes.

        One transaction: the secret only becomes verified together with a
        fresh batch of recovery-code hashes. Returns False if there was no
        unverified secret to flip (e.g. a concurrent confirm won).
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor_secrets.update()
                .where(
                    (_two_factor_secrets.c.user_id == user_id)
                    & (_two_factor_secrets.c.type == factor_type)
                    & (_two_factor_secrets.c.verified == 0)
                )
                .values(verified=1, last_used_step=step, updated_at=now)
            )
            if result.rowcount != 1:
                conn.rollback()
                return False
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.user_id == user_id))
            if code_hashes:
                conn.execute(
                    _recovery_codes.insert(),
                    [{"user_id": user_id, "code_hash": h, "created_at": now} for h in code_hashes],
                )
            conn.commit()
        return True

    def advance_totp_step(self, user_id: int, step: int) -> bool:
        """Record step as the last accepted TOTP step if it is newer.

        Returns False when step is not strictly greater than the stored one,
        which is how a replayed code within its window is refused.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor_secrets.update()
                .where(
                    (_two_factor_secrets.c.user_id == user_id)
                    & (_two_factor_secrets.c.type == "totp")
                    & (_two_factor_secrets.c.verified == 1)
                    & (
                        _two_factor_secrets.c.last_used_step.is_(None)
                        | (_two_factor_secrets.c.last_used_step < step)
                    )
                )
                .values(last_used_step=step, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount == 1

    def delete_two_factor(self, user_id: int) -> bool:
        """Remove every second-factor secret and recovery code for a user.

        Returns True if a secret existed.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_two_factor_secrets.delete().where(_two_factor_secrets.c.user_id == user_id))
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.user_id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def consume_recovery_code(self, user_id: int, code_hash: str) -> bool:
        """Delete one recovery code if present. True means this caller consumed it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _recovery_codes.delete().where(
                    (_recovery_codes.c.user_id == user_id) & (_recovery_codes.c.code_hash == code_hash)
                )
            )
            conn.commit()
        return result.rowcount == 1

    def count_recovery_codes(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_recovery_codes).where(_recovery_codes.c.user_id == user_id)
            ).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Login-method count
# ---------------------------------------------------------------------------


def _login_methods(conn, user_id: int, count_password: bool, lock: bool = False) -> int:
    query = select(_users.c.hashed_password).where(_users.c.id == user_id)
    if lock:
        query = query.with_for_update()
    hashed = conn.execute(query).scalar()
    passkeys = conn.execute(select(func.count()).select_from(_passkeys).where(_passkeys.c.user_id == user_id)).scalar()
    bindings = conn.execute(
        select(func.count()).select_from(_sso_bindings).where(_sso_bindings.c.user_id == user_id)
    ).scalar()
    return (1 if hashed and count_password else 0) + (passkeys or 0) + (bindings or 0)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _split(value: str | None) -> list[str]:
    return [part for part in (value or "").split(",") if part]


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        roles=_split(row.roles),
        encryption_key=row.encryption_key,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_sso_binding(row) -> SSOBinding:
    return SSOBinding(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_user_id=row.provider_user_id,
        provider_username=row.provider_username,
        provider_email=row.provider_email,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_passkey(row) -> PasskeyCredential:
    return PasskeyCredential(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        public_key=bytes(row.public_key),
        sign_count=row.sign_count,
        aaguid=row.aaguid,
        transports=_split(row.transports),
        device_name=row.device_name,
        backup_eligible=bool(row.backup_eligible),
        backup_state=bool(row.backup_state),
        created_at=row.created_at,
        last_used_at=row.last_used_at,
    )


def _row_to_two_factor(row) -> TwoFactorSecret:
    return TwoFactorSecret(
        user_id=row.user_id,
        type=row.type,
        secret=row.secret,
        verified=bool(row.verified),
        last_used_step=row.last_used_step,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
