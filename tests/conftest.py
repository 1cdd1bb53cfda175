"""Shared fixtures for the scmsrv test suite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

from scmsrv.auth import AuthState, setup_auth
from scmsrv.auth.config import AuthConfig, OAuth1Config, provider_config
from scmsrv.db import Database
from scmsrv.scm import FactoryResolver
from scmsrv.secret_store import SqlSecretStore

BITBUCKET_SERVER_URL = "https://bb.example.com"
PUBLIC_URL = "http://localhost:8080"

# ---------------------------------------------------------------------------
# Fake SCM HTTP endpoints (httpx.MockTransport)
# ---------------------------------------------------------------------------

Handler = Callable[[httpx.Request], httpx.Response]


class FakeHttp:
    """Routes outbound requests by method and ``scheme://host/path``.

    Unmatched requests answer ``fallback_status`` (404).  Every request is
    recorded.
    """

    def __init__(self) -> None:
        self.fallback_status = 404
        self.requests: list[httpx.Request] = []
        self._routes: list[tuple[str, str, Handler]] = []

    def on(
        self,
        method: str,
        url: str,
        handler: Handler | None = None,
        *,
        status: int = 200,
        **response_kwargs: Any,
    ) -> None:
        if handler is None:

            def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
                return httpx.Response(status, **response_kwargs)

        self._routes.append((method.upper(), url, handler))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        target = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        # later registrations win
        for method, url, handler in reversed(self._routes):
            if method in (request.method, "*") and url == target:
                return handler(request)
        return httpx.Response(self.fallback_status, json={"message": "unmatched"})

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


class FakeBitbucketServer:
    """OAuth 1.0a endpoints and the personal access token REST API of a Bitbucket Server."""

    def __init__(self, http: FakeHttp, endpoint: str = BITBUCKET_SERVER_URL, username: str = "alice"):
        self.endpoint = endpoint
        self.username = username
        self.tokens: list[dict[str, Any]] = []
        self._next_id = 1

        oauth = f"{endpoint}/plugins/servlet/oauth"
        http.on(
            "*",
            f"{oauth}/request-token",
            text="oauth_token=req1&oauth_token_secret=reqsecret&oauth_callback_confirmed=true",
        )
        http.on("*", f"{oauth}/access-token", text="oauth_token=acc1&oauth_token_secret=accsecret")

        rest = f"{endpoint}/rest"
        http.on(
            "GET",
            f"{rest}/api/1.0/application-properties",
            json={"version": "8.9.0"},
            headers={"x-ausername": username},
        )
        http.on(
            "GET",
            f"{rest}/api/1.0/users",
            json={"values": [{"name": username, "slug": username}]},
        )
        tokens_url = f"{rest}/access-tokens/1.0/users/{username}"
        http.on("GET", tokens_url, lambda _: httpx.Response(200, json={"values": list(self.tokens)}))
        http.on("PUT", tokens_url, self._create)
        for token_id in range(1, 20):
            http.on("DELETE", f"{tokens_url}/{token_id}", self._delete)

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        token = {"id": str(self._next_id), "name": body["name"], "permissions": body["permissions"]}
        self._next_id += 1
        self.tokens.append(token)
        return httpx.Response(200, json={**token, "token": f"bbpat-{token['id']}"})

    def _delete(self, request: httpx.Request) -> httpx.Response:
        token_id = request.url.path.rsplit("/", 1)[-1]
        before = len(self.tokens)
        self.tokens = [t for t in self.tokens if t["id"] != token_id]
        return httpx.Response(204 if len(self.tokens) < before else 404)


def parse_oauth_header(header: str) -> dict[str, str]:
    """``OAuth k="v", ...`` -> ``{k: v}`` (values percent-decoded)."""
    assert header.startswith("OAuth ")
    params = {}
    for pair in header[len("OAuth ") :].split(", "):
        key, _, value = pair.partition("=")
        params[unquote(key)] = unquote(value.strip('"'))
    return params


@pytest.fixture()
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture()
def transport(fake_http: FakeHttp) -> httpx.MockTransport:
    return httpx.MockTransport(fake_http)


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def key_files(tmp_path: Path, rsa_private_key: rsa.RSAPrivateKey) -> tuple[Path, Path]:
    """Consumer key and PKCS#8 PEM private key, as mounted in production."""
    consumer_key = tmp_path / "consumer.key"
    consumer_key.write_text("scmsrv-consumer\n")
    private_key = tmp_path / "private.pem"
    private_key.write_bytes(
        rsa_private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return consumer_key, private_key


# ---------------------------------------------------------------------------
# Database & secret store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def database(tmp_path: Path):
    """A fresh SQLite database with every migration applied."""
    db = Database(tmp_path / "scmsrv_data" / "scmsrv.sqlite3")
    await db.init()
    yield db
    await db.dispose()


@pytest.fixture()
def secret_store(database: Database) -> SqlSecretStore:
    return SqlSecretStore(database)


# ---------------------------------------------------------------------------
# Authorization services
# ---------------------------------------------------------------------------


@pytest.fixture()
def auth_config(key_files: tuple[Path, Path]) -> AuthConfig:
    """GitHub and Bitbucket Cloud over OAuth 2.0, Bitbucket Server over OAuth 1.0a."""
    consumer_key, private_key = key_files
    return AuthConfig(
        session_secret="test-secret",
        public_url=PUBLIC_URL,
        providers={
            "github": provider_config("github", "github", "gh-client", "gh-secret"),
            "bitbucket": provider_config("bitbucket", "bitbucket", "bb-client", "bb-secret"),
        },
        oauth1={
            "bitbucket-server": OAuth1Config(
                name="bitbucket-server",
                endpoint=BITBUCKET_SERVER_URL,
                consumer_key_path=str(consumer_key),
                private_key_path=str(private_key),
            )
        },
    )


@pytest_asyncio.fixture()
async def auth_state(
    auth_config: AuthConfig, secret_store: SqlSecretStore, transport: httpx.MockTransport
) -> AuthState:
    return await setup_auth(auth_config, secret_store, transport=transport)


@pytest.fixture()
def factory(auth_state: AuthState, transport: httpx.MockTransport) -> FactoryResolver:
    return FactoryResolver(auth_state, transport=transport)


# ---------------------------------------------------------------------------
# Async HTTP test client (uses the real FastAPI app)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def client(auth_state: AuthState, factory: FactoryResolver):
    """Async httpx client wired to the FastAPI app (no lifespan)."""
    import main as app_module

    app_module.app.state.auth = auth_state
    app_module.app.state.factory = factory

    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    del app_module.app.state.auth
    del app_module.app.state.factory


def bearer(user_id: str = "u1", user_name: str = "alice") -> dict[str, str]:
    """``Authorization`` header in the ``<id>:<name>`` test format."""
    return {"Authorization": f"Bearer {user_id}:{user_name}"}
