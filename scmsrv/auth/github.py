"""GitHub OAuth2 provider implementation."""

from __future__ import annotations

from scmsrv.auth.provider import OAuthProvider, TokenResponse


class GitHubProvider(OAuthProvider):
    """GitHub and GitHub Enterprise OAuth apps.

    GitHub's token endpoint infers the grant type, so none is sent.
    """

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self._post_token_request(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            }
        )
