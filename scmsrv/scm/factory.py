"""Factory resolution: fetch a devfile for a repository URL.

``FactoryResolver.resolve`` parses the URL, looks for a stored
credential for the caller, and tries each candidate devfile location.
When nothing is readable and the caller has no credential, it raises
``AuthorizationRequired`` naming the OAuth flow that would fix it; the
client runs that flow and retries.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import quote, urlsplit

import httpx
import yaml

from scmsrv.auth import BITBUCKET_SERVER, AuthState
from scmsrv.auth.errors import OAuthError
from scmsrv.auth.identity import Subject
from scmsrv.auth.provider import OAuthProvider
from scmsrv.credentials import classify_provider
from scmsrv.scm.urls import DEFAULT_DEVFILE_FILENAMES, DevfileLocation, RemoteUrl, parse_url

logger = logging.getLogger(__name__)

FACTORY_VERSION = "4.0"
_DENIED_STATUSES = frozenset({401, 403, 404})


class FactoryError(Exception):
    """The request cannot produce a factory (rendered as 400)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthorizationRequired(Exception):
    """The repository needs an OAuth flow before it can be read (rendered as 401)."""

    def __init__(self, provider: str, oauth_version: str, authentication_url: str) -> None:
        self.provider = provider
        self.oauth_version = oauth_version
        self.authentication_url = authentication_url
        self.message = f"SCM Authentication required for provider {provider}"
        super().__init__(self.message)

    def to_json(self) -> dict[str, Any]:
        return {
            "errorCode": 401,
            "message": self.message,
            "attributes": {
                "oauth_provider": self.provider,
                "oauth_version": self.oauth_version,
                "oauth_authentication_url": self.authentication_url,
            },
        }


@dataclass(frozen=True, slots=True)
class Credential:
    token: str
    is_oauth: bool


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class FactoryResolver:
    def __init__(
        self,
        auth: AuthState,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = auth
        self._timeout = auth.config.http_timeout
        self._transport = transport

    # ---- public API

    async def resolve(
        self,
        url: str,
        subject: Subject | None,
        devfile_filenames: Iterable[str] = DEFAULT_DEVFILE_FILENAMES,
    ) -> dict[str, Any]:
        remote = self._parse(url, devfile_filenames)
        credential = await self._credential(remote, subject)
        headers = self._auth_headers(remote, credential)
        locations = remote.devfile_file_locations()

        statuses: list[int] = []
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=True
        ) as client:
            for location in locations:
                try:
                    resp = await client.get(location.location, headers=headers)
                except httpx.HTTPError as exc:
                    logger.warning("Fetching %s failed: %s", location.filename, exc)
                    continue
                if resp.status_code == 200:
                    devfile = self._load_devfile(location, resp.text)
                    logger.info("Resolved %s from %s", location.filename, remote.provider_name)
                    return self._factory(remote, locations, devfile, location)
                statuses.append(resp.status_code)

        if credential is None and statuses and all(s in _DENIED_STATUSES for s in statuses):
            required = self._authorization_required(remote, url)
            if required is not None:
                raise required
            if any(s != 404 for s in statuses):
                raise FactoryError(
                    f"Repository {url} requires authorization but no OAuth provider "
                    f"is configured for {remote.provider_name}"
                )
        logger.info("No devfile found for %s", url)
        return self._factory(remote, locations, None, None)

    async def refresh_token(self, url: str, subject: Subject) -> None:
        """Ensure *subject* holds a usable credential for *url*."""
        remote = self._parse(url, DEFAULT_DEVFILE_FILENAMES)
        if await self._credential(remote, subject) is not None:
            return
        required = self._authorization_required(remote, url)
        if required is None:
            raise FactoryError(f"No OAuth provider is configured for {remote.provider_name}")
        raise required

    # ---- helpers

    @staticmethod
    def _parse(url: str, devfile_filenames: Iterable[str]) -> RemoteUrl:
        if not url:
            raise FactoryError("Parameter 'url' is required")
        remote = parse_url(url, devfile_filenames)
        if remote is None:
            kind = classify_provider(url)
            if kind != "unknown":
                raise FactoryError(f"Unsupported {kind} repository URL: {url}")
            raise FactoryError(
                "Cannot build factory with any of the provided parameters. "
                "Please check parameters correctness, and resend query."
            )
        return remote

    def _oauth2_providers(self, provider_type: str, provider_url: str) -> list[OAuthProvider]:
        host = _host(provider_url)
        return [
            p
            for p in self._auth.providers.values()
            if p.type == provider_type and _host(p.endpoint) == host
        ]

    async def _credential(self, remote: RemoteUrl, subject: Subject | None) -> Credential | None:
        if subject is None:
            return None
        auth = self._auth
        namespace = auth.namespace_for(subject)
        names = [remote.provider_name] + [
            p.name for p in self._oauth2_providers(remote.provider_name, remote.provider_url)
        ]

        for name in dict.fromkeys(names):
            cached = auth.tokens.get(auth.token_key(subject.id, name))
            if cached:
                return Credential(cached, is_oauth=True)
            pat = await auth.pats.get(namespace, name, remote.provider_url)
            if pat is not None:
                return Credential(pat.token_data, pat.is_oauth)

        if remote.provider_name == BITBUCKET_SERVER and BITBUCKET_SERVER in auth.oauth1:
            authenticator = auth.oauth1.get_authenticator(BITBUCKET_SERVER)
            if _host(authenticator.endpoint) == _host(remote.provider_url) and authenticator.has_credential(
                subject.id
            ):
                try:
                    pat = await auth.issue_oauth1_pat(authenticator, subject.id, subject.user_name)
                except OAuthError as exc:
                    logger.warning("Could not mint Bitbucket Server PAT for %s: %s", subject.id, exc.message)
                    return None
                return Credential(pat.token_data, is_oauth=False)
        return None

    @staticmethod
    def _auth_headers(remote: RemoteUrl, credential: Credential | None) -> dict[str, str]:
        if credential is None:
            return {}
        if remote.provider_name == "github":
            return {"Authorization": f"token {credential.token}"}
        if remote.provider_name == "azure-devops" and not credential.is_oauth:
            basic = base64.b64encode(f":{credential.token}".encode()).decode("ascii")
            return {"Authorization": f"Basic {basic}"}
        return {"Authorization": f"Bearer {credential.token}"}

    def _authorization_required(self, remote: RemoteUrl, url: str) -> AuthorizationRequired | None:
        """The OAuth flow that would grant access to *url*, if one is configured."""
        auth = self._auth
        engine = classify_provider(url)
        if engine == "unknown":
            engine = remote.provider_name

        if engine == BITBUCKET_SERVER:
            if BITBUCKET_SERVER not in auth.oauth1:
                return None
            authenticator = auth.oauth1.get_authenticator(BITBUCKET_SERVER)
            if _host(authenticator.endpoint) != _host(remote.provider_url):
                return None
            return AuthorizationRequired(BITBUCKET_SERVER, "1.0", authenticator.local_authenticate_url)

        providers = self._oauth2_providers(engine, remote.provider_url)
        if not providers:
            return None
        provider = providers[0]
        scope = quote(" ".join(provider.config.scopes), safe="")
        return AuthorizationRequired(
            provider.name,
            "2.0",
            f"{auth.config.api_base}/oauth/authenticate?oauth_provider={provider.name}"
            f"&scope={scope}&request_method=POST&signature_method=rsa",
        )

    @staticmethod
    def _load_devfile(location: DevfileLocation, text: str) -> dict[str, Any]:
        try:
            devfile = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise FactoryError(f"{location.filename} is not a valid devfile: {exc}") from exc
        if not isinstance(devfile, dict):
            raise FactoryError(f"{location.filename} is not a valid devfile")
        return devfile

    @staticmethod
    def _factory(
        remote: RemoteUrl,
        locations: list[DevfileLocation],
        devfile: dict[str, Any] | None,
        source: DevfileLocation | None,
    ) -> dict[str, Any]:
        scm_info: dict[str, Any] = {
            "clone_url": remote.clone_url,
            "scm_provider": remote.provider_name,
        }
        if remote.branch and remote.branch != "HEAD":
            scm_info["branch"] = remote.branch

        factory: dict[str, Any] = {"v": FACTORY_VERSION}
        if devfile is not None and source is not None:
            factory["source"] = source.filename
            factory["devfile"] = devfile
        factory["scm_info"] = scm_info
        factory["links"] = [
            {"rel": f"{loc.filename} content", "href": loc.location} for loc in locations
        ]
        return factory
