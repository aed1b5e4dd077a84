"""
auth/oauth.py -- Authlib identity providers for SSO code exchange.

The browser completes the provider's authorization redirect on its own and
hands us the one-time authorization code. Each provider here does the
server-side half: exchange the code at the token endpoint, then fetch the
profile with the resulting access token. Because the state round-trip never
passes through this service, authlib's requests-based OAuth2Session is used
directly rather than the Starlette integration and its session middleware.

Outcome contract for exchange_code():
  ExternalIdentity -- the provider vouched for this account
  None             -- the provider rejected the code (expired, reused, wrong
                      client) or returned no usable profile
  IdentityProviderUnavailableError -- network failure, timeout, or 5xx

Security notes:
  [H1] Email is only recorded when the provider confirms it is verified.
       Bindings are keyed on the provider's stable account id, never on
       email, so an unverified address cannot hijack an account; it is just
       not stored.

Only providers with both client ID and secret configured are registered.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session

from auth.errors import IdentityProviderUnavailableError
from auth.models import ExternalIdentity
from core.config import Settings

logger = logging.getLogger("toolcraft.auth.oauth")

_TOKEN_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
}


class IdentityProvider(ABC):
    """Base class for an authorization-code identity provider.

    Subclasses set the endpoints and implement _fetch_identity().
    """

    name = ""
    label = ""
    token_endpoint = ""
    scope = ""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str = "", timeout: float = 10.0) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def exchange_code(self, code: str) -> ExternalIdentity | None:
        """Exchange an authorization code for a verified external identity."""
        if not code:
            return None
        session = OAuth2Session(
            self.client_id,
            self.client_secret,
            scope=self.scope,
            redirect_uri=self.redirect_uri or None,
        )
        try:
            session.fetch_token(
                self.token_endpoint,
                code=code,
                headers=_TOKEN_HEADERS,
                timeout=self.timeout,
            )
            return self._fetch_identity(session)
        except OAuthError as exc:
            logger.info("%s rejected authorization code: %s", self.name, exc.error)
            return None
        except requests.RequestException as exc:
            logger.warning("%s unreachable during code exchange: %s", self.name, exc)
            raise IdentityProviderUnavailableError(f"{self.label} could not be reached.") from exc
        finally:
            session.close()

    @abstractmethod
    def _fetch_identity(self, session: OAuth2Session) -> ExternalIdentity | None:
        """Read the provider's profile endpoints. None if no usable identity."""

    def _get_json(self, session: OAuth2Session, url: str):
        """GET url with the session token.

        None on 4xx or a body that is not JSON; raises HTTPError on 5xx.
        """
        resp = session.get(url, timeout=self.timeout)
        if resp.status_code >= 500:
            resp.raise_for_status()
        if resp.status_code >= 400:
            logger.info("%s refused profile request (%d)", self.name, resp.status_code)
            return None
        try:
            return resp.json()
        except ValueError:
            logger.warning("%s returned a non-JSON body from %s", self.name, url)
            return None


class GitHubProvider(IdentityProvider):
    """GitHub OAuth app. Static endpoints, no OIDC discovery.

    GitHub does not include the email in the token response. Two API calls:
      1. GET /user -- numeric id (stable subject) and login
      2. GET /user/emails -- primary verified email, if any [H1]
    """

    name = "github"
    label = "GitHub"
    token_endpoint = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
    scope = "read:user user:email"
    api_base_url = "https://api.github.com"

    def _fetch_identity(self, session: OAuth2Session) -> ExternalIdentity | None:
        profile = self._get_json(session, f"{self.api_base_url}/user")
        if not isinstance(profile, dict) or "id" not in profile:
            return None

        email: str | None = None
        emails = self._get_json(session, f"{self.api_base_url}/user/emails")
        if not isinstance(emails, list):
            emails = []
        for entry in emails:
            if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                email = entry.get("email")
                break

        return ExternalIdentity(
            provider=self.name,
            provider_user_id=str(profile["id"]),
            username=profile.get("login") or "",
            email=email,
        )


class GoogleProvider(IdentityProvider):
    """Google OpenID Connect. Profile comes from the userinfo endpoint."""

    name = "google"
    label = "Google"
    token_endpoint = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_endpoint = "https://openidconnect.googleapis.com/v1/userinfo"
    scope = "openid email profile"

    def _fetch_identity(self, session: OAuth2Session) -> ExternalIdentity | None:
        userinfo = self._get_json(session, self.userinfo_endpoint)
        if not isinstance(userinfo, dict) or not userinfo.get("sub"):
            return None
        email = userinfo.get("email") if userinfo.get("email_verified") else None
        return ExternalIdentity(
            provider=self.name,
            provider_user_id=str(userinfo["sub"]),
            username=userinfo.get("name") or email or "",
            email=email,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_identity_providers(settings: Settings) -> dict[str, IdentityProvider]:
    """Return every configured provider keyed by name.

    A provider is included only when both its client ID and secret are set.
    """
    providers: dict[str, IdentityProvider] = {}

    if settings.sso_github_client_id and settings.sso_github_client_secret:
        providers["github"] = GitHubProvider(
            settings.sso_github_client_id,
            settings.sso_github_client_secret,
            settings.sso_github_redirect_url,
            settings.sso_request_timeout,
        )
        logger.info("GitHub SSO provider registered")

    if settings.sso_google_client_id and settings.sso_google_client_secret:
        providers["google"] = GoogleProvider(
            settings.sso_google_client_id,
            settings.sso_google_client_secret,
            settings.sso_google_redirect_url,
            settings.sso_request_timeout,
        )
        logger.info("Google SSO provider registered")

    return providers
