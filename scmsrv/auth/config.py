"""Authorization configuration loaded from environment variables.

``scmsrv.config.ConfigManager`` produces the same ``AuthConfig`` from a
TOML file; this module is the fallback when no file is present.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

PROVIDER_TYPES = ("github", "gitlab", "bitbucket", "azure-devops")

# type -> (default base url, authorize path or url, token path or url, scopes)
_WELL_KNOWN: dict[str, tuple[str, str, str, list[str]]] = {
    "github": (
        "https://github.com",
        "/login/oauth/authorize",
        "/login/oauth/access_token",
        ["repo", "user", "write:public_key"],
    ),
    "gitlab": (
        "https://gitlab.com",
        "/oauth/authorize",
        "/oauth/token",
        ["api", "write_repository", "openid"],
    ),
    "bitbucket": (
        "https://bitbucket.org",
        "/site/oauth2/authorize",
        "/site/oauth2/access_token",
        ["repository", "account"],
    ),
    "azure-devops": (
        "https://dev.azure.com",
        "https://app.vssps.visualstudio.com/oauth2/authorize",
        "https://app.vssps.visualstudio.com/oauth2/token",
        ["vso.code_write"],
    ),
}


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for a single OAuth 2.0 provider."""

    name: str
    type: str
    client_id: str
    client_secret: str
    base_url: str  # also the endpoint recorded on issued PATs
    authorize_url: str
    token_url: str
    scopes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OAuth1Config:
    """Bitbucket Server OAuth 1.0a application link settings."""

    name: str
    endpoint: str  # e.g. "https://bitbucket.example.com"
    consumer_key_path: str
    private_key_path: str
    consumer_secret: str = ""


def provider_config(
    name: str,
    type: str,
    client_id: str,
    client_secret: str,
    url: str | None = None,
    scopes: list[str] | None = None,
    authorization_endpoint: str | None = None,
    token_endpoint: str | None = None,
) -> ProviderConfig:
    """Build a ``ProviderConfig`` filling in the well-known defaults for *type*."""
    if type not in _WELL_KNOWN:
        raise ValueError(f"Unknown provider type {type!r} for provider {name!r}")
    default_base, authorize, token, default_scopes = _WELL_KNOWN[type]
    base = (url or default_base).rstrip("/")

    def _absolute(endpoint: str) -> str:
        return endpoint if endpoint.startswith("http") else f"{base}{endpoint}"

    return ProviderConfig(
        name=name,
        type=type,
        client_id=client_id,
        client_secret=client_secret,
        base_url=base,
        authorize_url=authorization_endpoint or _absolute(authorize),
        token_url=token_endpoint or _absolute(token),
        scopes=list(scopes) if scopes is not None else list(default_scopes),
    )


# ------------------------------------------------------------------
# Top-level config
# ------------------------------------------------------------------


@dataclass(frozen=True)
class AuthConfig:
    """Aggregated authorization configuration."""

    session_secret: str
    public_url: str  # externally reachable base URL, used for callbacks
    providers: dict[str, ProviderConfig]
    oauth1: dict[str, OAuth1Config] = field(default_factory=dict)
    api_prefix: str = "/api"
    namespace_suffix: str = "-che"
    http_timeout: float = 15.0  # seconds, every outbound provider call
    request_token_ttl: int = 600  # seconds

    @property
    def api_base(self) -> str:
        """Public URL ending in exactly one API prefix."""
        base = self.public_url.rstrip("/")
        prefix = self.api_prefix.rstrip("/")
        if prefix and not base.endswith(prefix):
            base = f"{base}{prefix}"
        return base


def _env_provider(type: str) -> ProviderConfig | None:
    key = type.upper().replace("-", "_")
    client_id = os.environ.get(f"SCMSRV_{key}_CLIENT_ID", "")
    client_secret = os.environ.get(f"SCMSRV_{key}_CLIENT_SECRET", "")
    if not client_id or not client_secret:
        return None
    return provider_config(
        name=type,
        type=type,
        client_id=client_id,
        client_secret=client_secret,
        url=os.environ.get(f"SCMSRV_{key}_URL") or None,
    )


def _env_oauth1() -> OAuth1Config | None:
    consumer_key_path = os.environ.get("SCMSRV_OAUTH1_BITBUCKET_CONSUMERKEYPATH", "")
    private_key_path = os.environ.get("SCMSRV_OAUTH1_BITBUCKET_PRIVATEKEYPATH", "")
    endpoint = os.environ.get("SCMSRV_OAUTH_BITBUCKET_ENDPOINT", "")
    if not consumer_key_path or not private_key_path or not endpoint:
        return None
    return OAuth1Config(
        name="bitbucket-server",
        endpoint=endpoint.rstrip("/"),
        consumer_key_path=consumer_key_path,
        private_key_path=private_key_path,
        consumer_secret=os.environ.get("SCMSRV_OAUTH1_BITBUCKET_CONSUMERSECRET", ""),
    )


def load_auth_config() -> AuthConfig:
    """Build an ``AuthConfig`` from environment variables.

    Environment variables
    ---------------------
    SCMSRV_PUBLIC_URL        : externally-reachable base URL of this app
    SCMSRV_API_PREFIX        : path prefix of the API  (default: /api)
    SCMSRV_SESSION_SECRET    : secret for signing session cookies
    SCMSRV_NAMESPACE_SUFFIX  : appended to user names  (default: -che)
    SCMSRV_HTTP_TIMEOUT      : provider call timeout in seconds  (default: 15)
    SCMSRV_REQUEST_TOKEN_TTL : OAuth 1.0a request token lifetime  (default: 600)

    OAuth 2.0 providers (GITHUB, GITLAB, BITBUCKET, AZURE_DEVOPS):
        SCMSRV_<PROVIDER>_CLIENT_ID
        SCMSRV_<PROVIDER>_CLIENT_SECRET
        SCMSRV_<PROVIDER>_URL      : optional, for self-hosted servers

    Bitbucket Server (OAuth 1.0a):
        SCMSRV_OAUTH_BITBUCKET_ENDPOINT
        SCMSRV_OAUTH1_BITBUCKET_CONSUMERKEYPATH
        SCMSRV_OAUTH1_BITBUCKET_PRIVATEKEYPATH
        SCMSRV_OAUTH1_BITBUCKET_CONSUMERSECRET  : optional, HMAC-SHA1 only
    """
    providers: dict[str, ProviderConfig] = {}
    for type in PROVIDER_TYPES:
        pc = _env_provider(type)
        if pc:
            providers[pc.name] = pc

    oauth1: dict[str, OAuth1Config] = {}
    o1 = _env_oauth1()
    if o1:
        oauth1[o1.name] = o1

    return AuthConfig(
        session_secret=os.environ.get("SCMSRV_SESSION_SECRET", "change-me-in-production"),
        public_url=os.environ.get("SCMSRV_PUBLIC_URL", "http://localhost:8080").rstrip("/"),
        providers=providers,
        oauth1=oauth1,
        api_prefix=os.environ.get("SCMSRV_API_PREFIX", "/api"),
        namespace_suffix=os.environ.get("SCMSRV_NAMESPACE_SUFFIX", "-che"),
        http_timeout=float(os.environ.get("SCMSRV_HTTP_TIMEOUT", "15")),
        request_token_ttl=int(os.environ.get("SCMSRV_REQUEST_TOKEN_TTL", "600")),
    )
