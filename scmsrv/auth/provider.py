"""OAuth 2.0 provider abstraction: base class and data models."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from scmsrv.auth.config import ProviderConfig
from scmsrv.auth.errors import OAuthError, OAuthErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TokenResponse:
    """Token data returned after OAuth code exchange."""

    access_token: str
    token_type: str = "bearer"
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


class OAuthProvider(ABC):
    """Base class for OAuth 2.0 authorization-code providers.

    Subclasses only decide how the code is exchanged; the authorize
    redirect is the same for every supported SCM.  Adding a provider
    means adding one module that subclasses this and registering its
    type in ``scmsrv.auth.setup_auth``.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        """Short, stable identifier for this provider (e.g. 'github')."""
        return self._config.name

    @property
    def type(self) -> str:
        return self._config.type

    @property
    def endpoint(self) -> str:
        """Server URL recorded on the PATs this provider issues."""
        return self._config.base_url

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def get_authorize_url(
        self, state: str, redirect_uri: str, scope: str | None = None
    ) -> str:
        """Return the URL the user's browser should be redirected to."""
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope or " ".join(self._config.scopes),
            "state": state,
            "response_type": "code",
        }
        return f"{self._config.authorize_url}?{urlencode(params)}"

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        ...

    # ---- helpers for subclasses

    async def _post_token_request(
        self, data: dict[str, str], auth: httpx.Auth | tuple[str, str] | None = None
    ) -> TokenResponse:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    self._config.token_url,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
                resp.raise_for_status()
                body: dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise OAuthError(
                OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE,
                f"{self.name} token exchange failed: {exc}",
            ) from exc

        if "error" in body:
            desc = body.get("error_description", body["error"])
            raise OAuthError(
                OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE, f"{self.name} token error: {desc}"
            )
        if not body.get("access_token"):
            raise OAuthError(
                OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE, f"{self.name} returned no access token"
            )

        return TokenResponse(
            access_token=body["access_token"],
            token_type=body.get("token_type", "bearer"),
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            scope=body.get("scope"),
        )
