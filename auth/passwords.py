"""
auth/passwords.py -- bcrypt password hashing and the timing-equalized check.

bcrypt is used directly, without a passlib wrapper. passlib's wrap-bug
detection builds a password longer than 72 bytes, which bcrypt 4.x rejects.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import CredentialStore


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    255 characters, which keeps typical input under that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB: treat as a mismatch.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than later ones. authenticate_password() runs bcrypt against this
# when the username does not exist or has no password.
_DUMMY_HASH: str = hash_password("toolcraft_timing_dummy")


def authenticate_password(store: CredentialStore, username: str, password: str) -> User | None:
    """Check a username/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username or passwordless account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_user_by_username(username)
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user
