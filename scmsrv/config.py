"""Declarative configuration manager for scmsrv.

Parses a TOML config file and provides:

* Global service settings (public URL, session secret, timeouts, database).
* OAuth 2.0 provider definitions (``[providers.<name>]``).
* OAuth 1.0a application links (``[oauth1.bitbucket-server]``).
* Conversion to the ``AuthConfig`` consumed by ``scmsrv.auth``.

Example::

    [global]
    public_url = "https://che.example.com"
    session_secret = "..."

    [providers.github]
    type = "github"
    client_id = "..."
    client_secret = "..."

    [oauth1.bitbucket-server]
    url = "https://bitbucket.example.com"
    consumer_key_path = "/etc/oauth1/consumer.key"
    private_key_path = "/etc/oauth1/private.key"

Environment variables (``scmsrv.auth.config.load_auth_config``) are the
fallback when no config file is present.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from scmsrv.auth.config import (
    PROVIDER_TYPES,
    AuthConfig,
    OAuth1Config,
    ProviderConfig,
    provider_config,
)

_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def data_dir() -> Path:
    return Path(os.environ.get("SCMSRV_DATA", ".")).resolve() / "scmsrv_data"


def default_database_path() -> Path:
    return data_dir() / "scmsrv.sqlite3"


def resolve_config_path() -> Path:
    """Return the TOML config file path.

    ``SCMSRV_CONF`` may point to either a file or a directory.  When it
    is a directory we look for ``config.toml`` inside it.
    """
    raw = os.environ.get("SCMSRV_CONF", "")
    if raw:
        p = Path(raw)
        if p.is_dir():
            return p / "config.toml"
        return p
    return Path(os.environ.get("SCMSRV_DATA", ".")).resolve() / "config.toml"


# ------------------------------------------------------------------
# Data classes
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderEntry:
    """One OAuth 2.0 provider instance.

    ``name`` is the user-chosen identifier used as ``oauth_provider``;
    ``type`` selects the implementation.
    """

    name: str
    type: str  # "github" | "gitlab" | "bitbucket" | "azure-devops"
    url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None

    @property
    def oauth_configured(self) -> bool:
        """True when client credentials are present (OAuth login possible)."""
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class OAuth1Entry:
    name: str
    url: str
    consumer_key_path: str
    private_key_path: str
    consumer_secret: str = ""


@dataclass(frozen=True)
class GlobalConfig:
    """Top-level / global settings."""

    public_url: str = "http://localhost:8080"
    api_prefix: str = "/api"
    session_secret: str = "change-me-in-production"
    namespace_suffix: str = "-che"
    http_timeout: float = 15.0
    request_token_ttl: int = 600
    database: Path = field(default_factory=default_database_path)


# ------------------------------------------------------------------
# ConfigManager
# ------------------------------------------------------------------


class ConfigManager:
    """Manages the declarative TOML configuration for scmsrv.

    Typical usage::

        cfg = ConfigManager.from_file(Path("config.toml"))
        auth_config = cfg.to_auth_config()
    """

    def __init__(
        self,
        global_config: GlobalConfig,
        providers: dict[str, ProviderEntry],
        oauth1: dict[str, OAuth1Entry] | None = None,
    ) -> None:
        self._global = global_config
        self._providers = providers
        self._oauth1 = oauth1 or {}

    # -------------------------------------------------------------- factories

    @classmethod
    def load(cls) -> ConfigManager | None:
        """Load the file named by ``SCMSRV_CONF``; ``None`` if there is none."""
        path = resolve_config_path()
        if not path.is_file():
            return None
        return cls.from_file(path)

    @classmethod
    def from_file(cls, path: Path) -> ConfigManager:
        """Load configuration from a TOML file."""
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        return cls._from_dict(raw)

    @classmethod
    def from_str(cls, toml_str: str) -> ConfigManager:
        """Load configuration from a TOML string (handy for tests)."""
        return cls._from_dict(tomllib.loads(toml_str))

    @classmethod
    def _from_dict(cls, raw: dict[str, Any]) -> ConfigManager:
        """Build a ``ConfigManager`` from a parsed TOML dictionary."""
        # -- global section --
        g = raw.get("global", {})
        database = g.get("database")
        global_config = GlobalConfig(
            public_url=str(g.get("public_url", "http://localhost:8080")).rstrip("/"),
            api_prefix=str(g.get("api_prefix", "/api")),
            session_secret=str(g.get("session_secret", "change-me-in-production")),
            namespace_suffix=str(g.get("namespace_suffix", "-che")),
            http_timeout=float(g.get("http_timeout", 15)),
            request_token_ttl=int(g.get("request_token_ttl", 600)),
            database=Path(database) if database else default_database_path(),
        )

        # -- OAuth 2.0 providers --
        providers: dict[str, ProviderEntry] = {}
        for name, pdata in raw.get("providers", {}).items():
            if not isinstance(pdata, dict):
                continue
            _check_name(name)

            ptype = pdata.get("type", "")
            if not ptype:
                raise ValueError(f"Provider {name!r} missing required 'type' field")
            if ptype not in PROVIDER_TYPES:
                raise ValueError(f"Unknown provider type {ptype!r} for provider {name!r}")

            scopes = pdata.get("scopes")
            providers[name] = ProviderEntry(
                name=name,
                type=ptype,
                url=(pdata.get("url") or "").rstrip("/") or None,
                client_id=pdata.get("client_id") or None,
                client_secret=pdata.get("client_secret") or None,
                scopes=[str(s) for s in scopes] if scopes is not None else None,
                authorization_endpoint=pdata.get("authorization_endpoint") or None,
                token_endpoint=pdata.get("token_endpoint") or None,
            )

        # -- OAuth 1.0a application links --
        oauth1: dict[str, OAuth1Entry] = {}
        for name, odata in raw.get("oauth1", {}).items():
            if not isinstance(odata, dict):
                continue
            _check_name(name)
            for key in ("url", "consumer_key_path", "private_key_path"):
                if not odata.get(key):
                    raise ValueError(f"OAuth 1.0a provider {name!r} missing required {key!r} field")
            oauth1[name] = OAuth1Entry(
                name=name,
                url=str(odata["url"]).rstrip("/"),
                consumer_key_path=str(odata["consumer_key_path"]),
                private_key_path=str(odata["private_key_path"]),
                consumer_secret=str(odata.get("consumer_secret", "")),
            )

        return cls(global_config, providers, oauth1)

    @classmethod
    def default(cls) -> ConfigManager:
        """Return an empty (no providers) configuration."""
        return cls(GlobalConfig(), {})

    # -------------------------------------------------------------- accessors

    @property
    def global_config(self) -> GlobalConfig:
        return self._global

    @property
    def providers(self) -> dict[str, ProviderEntry]:
        return dict(self._providers)

    @property
    def oauth1(self) -> dict[str, OAuth1Entry]:
        return dict(self._oauth1)

    def get_provider(self, name: str) -> ProviderEntry | None:
        return self._providers.get(name)

    # -------------------------------------------- auth subsystem integration

    def to_auth_provider_config(self, entry: ProviderEntry) -> ProviderConfig:
        """Build an ``auth.config.ProviderConfig`` from a provider entry."""
        return provider_config(
            name=entry.name,
            type=entry.type,
            client_id=entry.client_id or "",
            client_secret=entry.client_secret or "",
            url=entry.url,
            scopes=entry.scopes,
            authorization_endpoint=entry.authorization_endpoint,
            token_endpoint=entry.token_endpoint,
        )

    def to_auth_config(self) -> AuthConfig:
        """Build a complete ``AuthConfig`` from this configuration.

        Only providers with OAuth credentials (``client_id`` +
        ``client_secret``) are included.
        """
        g = self._global
        return AuthConfig(
            session_secret=g.session_secret,
            public_url=g.public_url,
            providers={
                name: self.to_auth_provider_config(entry)
                for name, entry in self._providers.items()
                if entry.oauth_configured
            },
            oauth1={
                name: OAuth1Config(
                    name=name,
                    endpoint=entry.url,
                    consumer_key_path=entry.consumer_key_path,
                    private_key_path=entry.private_key_path,
                    consumer_secret=entry.consumer_secret,
                )
                for name, entry in self._oauth1.items()
            },
            api_prefix=g.api_prefix,
            namespace_suffix=g.namespace_suffix,
            http_timeout=g.http_timeout,
            request_token_ttl=g.request_token_ttl,
        )


def _check_name(name: str) -> None:
    # provider names travel in query strings and PAT annotations
    if not _NAME_RE.match(name):
        raise ValueError(
            f"Provider name {name!r} is invalid; "
            "use only letters, digits, hyphens, and underscores"
        )
