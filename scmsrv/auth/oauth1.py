"""OAuth 1.0a (RFC 5849) signing and the Bitbucket Server three-legged flow.

The module has three layers:

* pure signing primitives (percent encoding, base string, RSA-SHA1 and
  HMAC-SHA1 signatures, the ``Authorization`` header);
* ``BitbucketServerOAuth1Authenticator``, which runs the request-token,
  authorize and access-token legs against one Bitbucket Server and then
  signs API calls (including personal access token minting) for users who
  completed the flow;
* ``OAuth1Service``, the registry of configured authenticators built once
  at startup.

Request-token secrets live in a ``TokenStore`` with a TTL and are consumed
by the callback with an atomic ``pop``.  A callback whose token is unknown,
expired, already used or issued to a different user fails with
``UNKNOWN_CREDENTIAL``.
"""

from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit

import anyio
import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from scmsrv.auth.cache import TokenStore
from scmsrv.auth.config import AuthConfig, OAuth1Config
from scmsrv.auth.errors import OAuthError, OAuthErrorKind
from scmsrv.auth.state import parse_query_state

logger = logging.getLogger(__name__)

OAUTH_VERSION = "1.0"
DEFAULT_PAT_PERMISSIONS = ("PROJECT_WRITE", "REPO_WRITE")
PAT_EXPIRY_DAYS = 90


class SignatureMethod(enum.Enum):
    RSA_SHA1 = "RSA-SHA1"
    HMAC_SHA1 = "HMAC-SHA1"

    @classmethod
    def from_hint(cls, hint: str | None) -> SignatureMethod:
        """``rsa`` selects RSA-SHA1; anything else selects HMAC-SHA1."""
        return cls.RSA_SHA1 if (hint or "").lower() == "rsa" else cls.HMAC_SHA1


def http_method_from_hint(hint: str | None) -> str:
    return "POST" if (hint or "").lower() == "post" else "GET"


@dataclass(frozen=True, slots=True)
class RequestToken:
    """Request-token secret and the user who asked for it."""

    secret: str
    user_id: str


@dataclass(frozen=True, slots=True)
class AccessCredential:
    """Per-user access token obtained at the end of the three legs."""

    token: str
    secret: str | None = None


# ------------------------------------------------------------------
# Signing primitives
# ------------------------------------------------------------------


def percent_encode(value: str) -> str:
    """RFC 3986 encoding: only ``A-Z a-z 0-9 - . _ ~`` stay literal."""
    return quote(value, safe="")


def normalize_base_url(url: str) -> str:
    """Base string URI: lowercase scheme/host, no default port, query or fragment."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"
    return f"{scheme}://{host}{parts.path or '/'}"


def normalize_parameters(params: Iterable[tuple[str, str]]) -> str:
    """Encode, sort by key then value, and join as ``k=v&k=v``."""
    encoded = sorted(
        (percent_encode(k), percent_encode(v)) for k, v in params if k != "oauth_signature"
    )
    return "&".join(f"{k}={v}" for k, v in encoded)


def signature_base_string(method: str, url: str, params: Iterable[tuple[str, str]]) -> str:
    """Build the base string; query parameters of *url* are signed too."""
    query = parse_qsl(urlsplit(url).query, keep_blank_values=True)
    return "&".join(
        (
            method.upper(),
            percent_encode(normalize_base_url(url)),
            percent_encode(normalize_parameters([*params, *query])),
        )
    )


def sign_rsa_sha1(base_string: str, private_key: rsa.RSAPrivateKey) -> str:
    signature = private_key.sign(base_string.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1())
    return base64.b64encode(signature).decode("ascii")


def sign_hmac_sha1(base_string: str, consumer_secret: str, token_secret: str | None = None) -> str:
    key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret or '')}"
    digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def authorization_header(oauth_params: Mapping[str, str]) -> str:
    """``OAuth k="v", ...`` with keys sorted and values percent-encoded."""
    pairs = ", ".join(
        f'{percent_encode(k)}="{percent_encode(v)}"' for k, v in sorted(oauth_params.items())
    )
    return f"OAuth {pairs}"


def load_private_key(material: str) -> rsa.RSAPrivateKey:
    """Load an RSA key from PEM text or from base64 DER (PKCS#8)."""
    if "BEGIN" in material:
        key = serialization.load_pem_private_key(material.encode("ascii"), password=None)
    else:
        der = base64.b64decode("".join(material.split()))
        key = serialization.load_der_private_key(der, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("OAuth 1.0a signing key must be an RSA private key")
    return key


def _parse_form(body: str) -> dict[str, str]:
    return dict(parse_qsl(body, keep_blank_values=True))


# ------------------------------------------------------------------
# Bitbucket Server authenticator
# ------------------------------------------------------------------


class BitbucketServerOAuth1Authenticator:
    """Three-legged OAuth 1.0a against one Bitbucket Server instance."""

    name = "bitbucket-server"

    def __init__(
        self,
        config: OAuth1Config,
        consumer_key: str,
        private_key: rsa.RSAPrivateKey,
        api_base: str,
        *,
        timeout: float = 15.0,
        request_token_ttl: int = 600,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = config.endpoint.rstrip("/")
        self.request_token_uri = f"{self.endpoint}/plugins/servlet/oauth/request-token"
        self.access_token_uri = f"{self.endpoint}/plugins/servlet/oauth/access-token"
        self.authorize_uri = f"{self.endpoint}/plugins/servlet/oauth/authorize"
        self.api_base = api_base.rstrip("/")
        self.redirect_uri = f"{self.api_base}/oauth/1.0/callback"

        self._consumer_key = consumer_key
        self._consumer_secret = config.consumer_secret
        self._private_key = private_key
        self._timeout = timeout
        self._transport = transport
        self._request_tokens: TokenStore[RequestToken] = TokenStore(ttl=request_token_ttl)
        self._credentials: TokenStore[AccessCredential] = TokenStore()

    @property
    def local_authenticate_url(self) -> str:
        """Where a client starts this flow on our side."""
        return (
            f"{self.api_base}/oauth/1.0/authenticate"
            f"?oauth_provider={self.name}&request_method=POST&signature_method=rsa"
        )

    # ---- signing

    def sign(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        token_secret: str | None = None,
        signature_method: SignatureMethod = SignatureMethod.RSA_SHA1,
        extra: Mapping[str, str] | None = None,
        nonce: str | None = None,
        timestamp: int | None = None,
    ) -> dict[str, str]:
        """Return the OAuth protocol parameters for a request, signature included."""
        params: dict[str, str] = {
            "oauth_consumer_key": self._consumer_key,
            "oauth_nonce": nonce or secrets.token_hex(16),
            "oauth_signature_method": signature_method.value,
            "oauth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
            "oauth_version": OAUTH_VERSION,
        }
        if token:
            params["oauth_token"] = token
        if extra:
            params.update(extra)

        base = signature_base_string(method, url, params.items())
        if signature_method is SignatureMethod.RSA_SHA1:
            params["oauth_signature"] = sign_rsa_sha1(base, self._private_key)
        else:
            params["oauth_signature"] = sign_hmac_sha1(base, self._consumer_secret, token_secret)
        return params

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _token_request(self, method: str, url: str, oauth_params: Mapping[str, str]) -> dict[str, str]:
        try:
            async with self._client() as client:
                resp = await client.request(
                    method, url, headers={"Authorization": authorization_header(oauth_params)}
                )
        except httpx.HTTPError as exc:
            raise OAuthError(OAuthErrorKind.PROTOCOL_ERROR, f"{url} unreachable: {exc}") from exc
        if resp.status_code != 200:
            raise OAuthError(
                OAuthErrorKind.PROTOCOL_ERROR,
                f"{url} answered {resp.status_code}",
            )
        return _parse_form(resp.text)

    # ---- leg 1

    async def get_authenticate_url(
        self,
        request_url: str,
        http_method: str,
        signature_method: SignatureMethod,
        current_user_id: str,
    ) -> str:
        """Obtain a request token and return the provider's authorize URL."""
        query = parse_qsl(urlsplit(request_url).query, keep_blank_values=True)
        supplied = [v for k, v in query if k == "userId"]
        if supplied and supplied[0] != current_user_id:
            raise OAuthError(
                OAuthErrorKind.PROTOCOL_ERROR,
                "userId parameter does not match the authenticated user",
            )

        state = [(k, v) for k, v in query if k != "userId"]
        state.append(("userId", current_user_id))
        callback = f"{self.redirect_uri}?{urlencode({'state': urlencode(state)})}"

        oauth_params = self.sign(
            http_method,
            self.request_token_uri,
            signature_method=signature_method,
            extra={"oauth_callback": callback},
        )
        body = await self._token_request(http_method, self.request_token_uri, oauth_params)

        token = body.get("oauth_token")
        if not token:
            raise OAuthError(OAuthErrorKind.PROTOCOL_ERROR, "request token missing from response")
        self._request_tokens.set(token, RequestToken(body.get("oauth_token_secret", ""), current_user_id))
        logger.info("Obtained OAuth 1.0a request token for user %s", current_user_id)
        return f"{self.authorize_uri}?{urlencode({'oauth_token': token})}"

    # ---- leg 2

    async def callback(self, request_url: str) -> str:
        """Exchange the verified request token; return the user id it belongs to."""
        query = _parse_form(urlsplit(request_url).query)
        token = query.get("oauth_token")
        verifier = query.get("oauth_verifier")
        if not token or not verifier:
            raise OAuthError(
                OAuthErrorKind.PROTOCOL_ERROR, "oauth_token and oauth_verifier are required"
            )
        if verifier == "denied":
            self._request_tokens.delete(token)
            raise OAuthError(OAuthErrorKind.DENIED, "authorization denied by the user")

        state = parse_query_state(query.get("state", ""))
        user_id = state.get("userId")
        if not user_id:
            raise OAuthError(OAuthErrorKind.PROTOCOL_ERROR, "state carries no userId")

        pending = self._request_tokens.pop(token)
        if pending is None:
            raise OAuthError(
                OAuthErrorKind.UNKNOWN_CREDENTIAL, "request token is unknown, expired or already used"
            )
        if pending.user_id != user_id:
            logger.warning(
                "OAuth 1.0a callback for %s presented a request token issued to %s", user_id, pending.user_id
            )
            raise OAuthError(
                OAuthErrorKind.UNKNOWN_CREDENTIAL, "request token was not issued to this user"
            )

        method = http_method_from_hint(state.get("request_method"))
        oauth_params = self.sign(
            method,
            self.access_token_uri,
            token=token,
            token_secret=pending.secret,
            signature_method=SignatureMethod.from_hint(state.get("signature_method")),
            extra={"oauth_verifier": verifier},
        )
        body = await self._token_request(method, self.access_token_uri, oauth_params)

        access_token = body.get("oauth_token")
        if not access_token:
            raise OAuthError(OAuthErrorKind.PROTOCOL_ERROR, "access token missing from response")
        self._credentials.set(
            user_id, AccessCredential(access_token, body.get("oauth_token_secret") or None)
        )
        logger.info("Stored OAuth 1.0a access credential for user %s", user_id)
        return user_id

    # ---- leg 3

    def has_credential(self, user_id: str) -> bool:
        return user_id in self._credentials

    def forget(self, user_id: str) -> bool:
        return self._credentials.delete(user_id)

    def compute_authorization_header(self, user_id: str, method: str, url: str) -> str:
        """Sign *method* *url* for *user_id* with RSA-SHA1."""
        credential = self._credentials.get(user_id)
        if credential is None:
            raise OAuthError(
                OAuthErrorKind.UNKNOWN_CREDENTIAL, f"no OAuth 1.0a credential for user {user_id}"
            )
        params = self.sign(
            method,
            url,
            token=credential.token,
            token_secret=credential.secret,
            signature_method=SignatureMethod.RSA_SHA1,
        )
        return authorization_header(params)

    # ---- personal access tokens

    async def _signed(
        self, client: httpx.AsyncClient, user_id: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        headers = {
            "Authorization": self.compute_authorization_header(user_id, method, url),
            "Accept": "application/json",
        }
        try:
            return await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise OAuthError(
                OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE, f"{method} {url} failed: {exc}"
            ) from exc

    @staticmethod
    def _check(resp: httpx.Response, what: str) -> None:
        if not resp.is_success:
            raise OAuthError(
                OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE, f"{what} answered {resp.status_code}"
            )

    async def create_personal_access_token(
        self,
        user_id: str,
        display_name: str,
        permissions: Iterable[str] = DEFAULT_PAT_PERMISSIONS,
    ) -> str:
        """Mint a Bitbucket Server PAT named *display_name* for *user_id*.

        Existing tokens with the same name are deleted first, so repeated
        calls leave exactly one token under that name.
        """
        rest = f"{self.endpoint}/rest"
        async with self._client() as client:
            resp = await self._signed(client, user_id, "GET", f"{rest}/api/1.0/application-properties")
            self._check(resp, "application-properties")
            username = unquote(resp.headers.get("x-ausername", ""))
            if not username:
                raise OAuthError(
                    OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE, "provider did not report a username"
                )

            query = urlencode({"start": 0, "limit": 25, "filter": username})
            resp = await self._signed(client, user_id, "GET", f"{rest}/api/1.0/users?{query}")
            self._check(resp, "user search")
            slug = next(
                (u.get("slug") for u in resp.json().get("values", []) if u.get("name") == username),
                None,
            )
            if not slug:
                raise OAuthError(
                    OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE, f"user {username} not found"
                )

            tokens_url = f"{rest}/access-tokens/1.0/users/{quote(slug, safe='')}"
            resp = await self._signed(client, user_id, "GET", f"{tokens_url}?start=0&limit=100")
            self._check(resp, "token listing")
            for existing in resp.json().get("values", []):
                if existing.get("name") != display_name:
                    continue
                resp = await self._signed(client, user_id, "DELETE", f"{tokens_url}/{existing['id']}")
                if resp.status_code == 404:
                    continue
                self._check(resp, "token deletion")
                logger.info("Rotated Bitbucket Server token %s for %s", display_name, username)

            resp = await self._signed(
                client,
                user_id,
                "PUT",
                tokens_url,
                json={
                    "name": display_name,
                    "permissions": list(permissions),
                    "expiryDays": PAT_EXPIRY_DAYS,
                },
            )
            self._check(resp, "token creation")
            token = resp.json().get("token")
        if not token:
            raise OAuthError(OAuthErrorKind.PROVIDER_EXCHANGE_FAILURE, "token missing from response")
        return token


# ------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------


class OAuth1Service:
    """Configured OAuth 1.0a authenticators, keyed by provider name."""

    def __init__(self, authenticators: Iterable[BitbucketServerOAuth1Authenticator] = ()) -> None:
        self._authenticators = {a.name: a for a in authenticators}

    def get_authenticator(self, name: str) -> BitbucketServerOAuth1Authenticator:
        try:
            return self._authenticators[name]
        except KeyError:
            raise OAuthError(
                OAuthErrorKind.PROTOCOL_ERROR, f"unsupported OAuth 1.0a provider {name!r}"
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._authenticators

    def __iter__(self):
        return iter(self._authenticators.values())

    @classmethod
    async def from_config(
        cls, config: AuthConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> OAuth1Service:
        """Read key material from disk and build every configured authenticator."""
        authenticators = []
        for name, o1 in config.oauth1.items():
            if name != BitbucketServerOAuth1Authenticator.name:
                logger.warning("Ignoring unsupported OAuth 1.0a provider %s", name)
                continue
            consumer_key = (await anyio.Path(o1.consumer_key_path).read_text()).strip()
            private_key = load_private_key(await anyio.Path(o1.private_key_path).read_text())
            authenticators.append(
                BitbucketServerOAuth1Authenticator(
                    o1,
                    consumer_key,
                    private_key,
                    config.api_base,
                    timeout=config.http_timeout,
                    request_token_ttl=config.request_token_ttl,
                    transport=transport,
                )
            )
            logger.info("OAuth 1.0a enabled for %s at %s", name, o1.endpoint)
        return cls(authenticators)
