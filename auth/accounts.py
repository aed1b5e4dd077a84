"""
auth/accounts.py -- Self-service account registration.

create_user() makes a local account with a password. That password is its
first login method; passkeys and SSO bindings are added later from a session.
check_username() lets a sign-up form test a name before submitting.

Usernames are unique and case-sensitive (UNIQUE on users.username). The
constraint, not the availability check, decides races: a losing insert
surfaces as UsernameTakenError.

Registration can be switched off with ENABLE_USER_REGISTRATION=false, in
which case create_user() raises RegistrationDisabledError.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import RegistrationDisabledError, UsernameTakenError
from auth.models import User
from auth.passwords import hash_password
from auth.store import CredentialStore
from core.config import Settings, get_settings

logger = logging.getLogger("toolcraft.auth.accounts")


class AccountService:
    def __init__(self, store: CredentialStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    def create_user(self, username: str, password: str, email: str | None = None) -> User:
        """Create a local account and return it as stored.

        Raises RegistrationDisabledError or UsernameTakenError.
        """
        if not self._settings.enable_user_registration:
            raise RegistrationDisabledError()
        user = User(username=username, email=email, hashed_password=hash_password(password))
        try:
            user_id = self._store.create_user(user)
        except IntegrityError as exc:
            logger.info("Registration refused: username taken (%s)", username)
            raise UsernameTakenError() from exc
        logger.info("User created (user_id=%s username=%s)", user_id, username)
        return self._store.get_user(user_id)

    def check_username(self, username: str) -> bool:
        """Return True if username is already taken."""
        return self._store.get_user_by_username(username) is not None
