"""Bitbucket Cloud OAuth2 provider implementation."""

from __future__ import annotations

from scmsrv.auth.provider import OAuthProvider, TokenResponse


class BitbucketProvider(OAuthProvider):
    """Bitbucket Cloud consumers.

    The client authenticates with HTTP Basic instead of form fields.
    """

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self._post_token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            auth=(self._config.client_id, self._config.client_secret),
        )
