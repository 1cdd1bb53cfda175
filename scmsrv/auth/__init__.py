"""SCM authorization for scmsrv.

This package provides:

* **OAuth 2.0 authorization-code flows** against GitHub, GitLab,
  Bitbucket Cloud and Azure DevOps (more can be added by subclassing
  ``OAuthProvider``).
* **Three-legged OAuth 1.0a** against Bitbucket Server, including
  request signing for API calls and personal access token minting.
* **Caller identity** resolved from gateway headers, bearer tokens or the
  session.

Everything runtime-specific lives on one ``AuthState`` built by
``setup_auth()`` during the application lifespan and stored on
``app.state.auth``.  Routes reach it through the ``get_auth_state``
dependency.
"""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

import httpx
from fastapi import Request

from scmsrv.auth.cache import TokenStore
from scmsrv.auth.config import AuthConfig, OAuth1Config, ProviderConfig, load_auth_config
from scmsrv.auth.errors import ApiError, OAuthError, OAuthErrorKind
from scmsrv.auth.identity import Subject, current_subject, require_subject
from scmsrv.auth.oauth1 import BitbucketServerOAuth1Authenticator, OAuth1Service
from scmsrv.auth.provider import OAuthProvider, TokenResponse
from scmsrv.credentials import PatStore, PersonalAccessToken, scm_url_from_repo_url, user_namespace
from scmsrv.secret_store import SecretStore

__all__ = [
    "ApiError",
    "AuthConfig",
    "AuthState",
    "BITBUCKET_SERVER",
    "OAuth1Config",
    "OAuth1Service",
    "OAuthError",
    "OAuthErrorKind",
    "OAuthProvider",
    "ProviderConfig",
    "Subject",
    "TokenResponse",
    "current_subject",
    "get_auth_state",
    "load_auth_config",
    "require_subject",
    "setup_auth",
]

logger = logging.getLogger(__name__)

BITBUCKET_SERVER = "bitbucket-server"


class AuthState:
    """Runtime authorization services, created once per application."""

    def __init__(
        self,
        config: AuthConfig,
        providers: dict[str, OAuthProvider],
        oauth1: OAuth1Service,
        pats: PatStore,
    ) -> None:
        self.config = config
        self.providers = providers
        self.oauth1 = oauth1
        self.pats = pats
        # OAuth 2.0 tokens for callers without a usable namespace
        self.tokens: TokenStore[str] = TokenStore()

    @property
    def oauth2_redirect_uri(self) -> str:
        return f"{self.config.api_base}/oauth/callback"

    def namespace_for(self, subject: Subject) -> str:
        return user_namespace(subject.user_name, self.config.namespace_suffix)

    @staticmethod
    def token_key(user_id: str, provider: str) -> str:
        return f"{user_id}\x00{provider}"

    async def issue_oauth1_pat(
        self,
        authenticator: BitbucketServerOAuth1Authenticator,
        user_id: str,
        user_name: str,
    ) -> PersonalAccessToken:
        """Mint a Bitbucket Server PAT for *user_id* and store it."""
        host = urlsplit(authenticator.endpoint).hostname or "bitbucket"
        name = f"che-token-{user_id}-{host}"
        token = await authenticator.create_personal_access_token(user_id, name)

        namespace = user_namespace(user_name, self.config.namespace_suffix)
        for existing in await self.pats.list_all(namespace):
            if (
                existing.git_provider == BITBUCKET_SERVER
                and existing.owner_user_id == user_id
                and existing.token_name == name
            ):
                await self.pats.delete(namespace, existing)

        return await self.pats.create(
            namespace,
            PersonalAccessToken(
                token_name=name,
                token_data=token,
                git_provider=BITBUCKET_SERVER,
                git_provider_endpoint=scm_url_from_repo_url(authenticator.endpoint) or authenticator.endpoint,
                owner_user_id=user_id,
            ),
        )


# ------------------------------------------------------------------
# Startup helper
# ------------------------------------------------------------------


def _build_provider(
    pconfig: ProviderConfig, timeout: float, transport: httpx.AsyncBaseTransport | None
) -> OAuthProvider:
    if pconfig.type == "github":
        from scmsrv.auth.github import GitHubProvider

        return GitHubProvider(pconfig, timeout=timeout, transport=transport)
    if pconfig.type == "gitlab":
        from scmsrv.auth.gitlab import GitLabProvider

        return GitLabProvider(pconfig, timeout=timeout, transport=transport)
    if pconfig.type == "bitbucket":
        from scmsrv.auth.bitbucket import BitbucketProvider

        return BitbucketProvider(pconfig, timeout=timeout, transport=transport)
    if pconfig.type == "azure-devops":
        from scmsrv.auth.azure import AzureDevOpsProvider

        return AzureDevOpsProvider(pconfig, timeout=timeout, transport=transport)
    raise ValueError(f"Unknown provider type: {pconfig.type!r}")


async def setup_auth(
    config: AuthConfig,
    secret_store: SecretStore,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AuthState:
    """Build every authorization service from *config*.

    Called once during the FastAPI lifespan.  *transport* is handed to
    every outbound ``httpx`` client (tests pass a ``MockTransport``).
    """
    providers = {
        name: _build_provider(pconfig, config.http_timeout, transport)
        for name, pconfig in config.providers.items()
    }
    oauth1 = await OAuth1Service.from_config(config, transport=transport)
    logger.info(
        "Authorization ready: OAuth 2.0 providers %s, OAuth 1.0a providers %s",
        sorted(providers),
        sorted(a.name for a in oauth1),
    )
    return AuthState(config, providers, oauth1, PatStore(secret_store))


def get_auth_state(request: Request) -> AuthState:
    """FastAPI dependency returning the application's ``AuthState``."""
    state = getattr(request.app.state, "auth", None)
    if state is None:
        raise RuntimeError("Authorization not configured – setup_auth() has not run")
    return state
