"""Azure DevOps OAuth2 provider implementation."""

from __future__ import annotations

from scmsrv.auth.provider import OAuthProvider, TokenResponse


class AzureDevOpsProvider(OAuthProvider):
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self._post_token_request(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            }
        )
