"""
auth/sso.py -- SSOBindingManager: external identities bound to local users.

Login never creates an account. exchange_and_identify() only resolves an
identity that is already bound; an unbound identity is a rejection. Binding
happens explicitly, from an authenticated session, through add_binding().

Conflicts (provider already bound to this user, or this external account
already bound to someone else) raise SSOBindingConflictError and leave every
existing binding untouched. The UNIQUE constraints on sso_bindings catch the
race where two requests pass the pre-checks at once.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    InvalidOAuthCodeError,
    SSOBindingConflictError,
    UnsupportedProviderError,
    UserNotFoundError,
)
from auth.models import SSOBinding
from auth.oauth import IdentityProvider
from auth.store import CredentialStore
from core.config import Settings, get_settings

logger = logging.getLogger("toolcraft.auth.sso")


class SSOBindingManager:
    def __init__(
        self,
        store: CredentialStore,
        providers: dict[str, IdentityProvider],
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._providers = providers
        self._settings = settings or get_settings()

    @property
    def provider_names(self) -> list[str]:
        return sorted(self._providers)

    def get_provider(self, name: str) -> IdentityProvider | None:
        return self._providers.get(name)

    def exchange_and_identify(self, provider: str, code: str) -> int | None:
        """Resolve the local user bound to the identity behind code.

        Returns None when the provider is unknown, rejects the code, or the
        identity has no binding. IdentityProviderUnavailableError propagates.
        """
        idp = self._providers.get(provider)
        if idp is None:
            return None
        identity = idp.exchange_code(code)
        if identity is None:
            return None
        binding = self._store.get_sso_binding(provider, identity.provider_user_id)
        if binding is None:
            logger.info("SSO login rejected: %s identity is not bound", provider)
            return None
        return binding.user_id

    def add_binding(self, user_id: int, provider: str, code: str) -> SSOBinding:
        """Bind the identity behind code to user_id.

        Raises UnsupportedProviderError, UserNotFoundError,
        InvalidOAuthCodeError, or SSOBindingConflictError.
        """
        idp = self._providers.get(provider)
        if idp is None:
            raise UnsupportedProviderError()
        if self._store.get_user(user_id) is None:
            raise UserNotFoundError()
        if self._store.get_user_sso_binding(user_id, provider) is not None:
            raise SSOBindingConflictError(f"A {idp.label} account is already bound to this user.")

        identity = idp.exchange_code(code)
        if identity is None:
            raise InvalidOAuthCodeError()
        if self._store.get_sso_binding(provider, identity.provider_user_id) is not None:
            raise SSOBindingConflictError(f"This {idp.label} account is already bound to another user.")

        binding = SSOBinding(
            user_id=user_id,
            provider=provider,
            provider_user_id=identity.provider_user_id,
            provider_username=identity.username,
            provider_email=identity.email,
        )
        try:
            binding.id = self._store.create_sso_binding(binding)
        except IntegrityError as exc:
            raise SSOBindingConflictError() from exc
        logger.info("SSO binding added (user_id=%s provider=%s)", user_id, provider)
        return binding

    def list_bindings(self, user_id: int) -> list[SSOBinding]:
        return self._store.list_sso_bindings(user_id)

    def delete_binding(self, user_id: int, provider: str) -> bool:
        """Remove the user's binding for provider.

        Returns False if there was none. Raises LastLoginMethodError when the
        binding is the account's only login method (no password, no passkey,
        no other binding). A stored password only counts while password login
        is enabled.
        """
        removed = self._store.delete_sso_binding(
            user_id, provider, count_password=self._settings.enable_password_login
        )
        if removed:
            logger.info("SSO binding removed (user_id=%s provider=%s)", user_id, provider)
        return removed
