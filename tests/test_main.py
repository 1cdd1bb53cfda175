"""Tests for main.py: configuration loading, lifespan, middleware and error handlers."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from httpx import AsyncClient

import main as app_module
from scmsrv.auth import AuthState
from scmsrv.scm import FactoryResolver
from tests.conftest import bearer

CONFIG_TOML = """\
[global]
public_url = "https://che.example.com"
session_secret = "s3cret"
database = "{database}"

[providers.github]
type = "github"
client_id = "gh-cid"
client_secret = "gh-csec"
"""


def write_config(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(CONFIG_TOML.format(database=tmp_path / "db" / "scmsrv.sqlite3"))
    return path


# =====================================================================
# Configuration
# =====================================================================


class TestLoadConfig:
    def test_from_file(self, tmp_path: Path):
        with patch.dict("os.environ", {"SCMSRV_CONF": str(write_config(tmp_path))}, clear=True):
            auth_config, db_path = app_module.load_config()
        assert auth_config.public_url == "https://che.example.com"
        assert set(auth_config.providers) == {"github"}
        assert db_path == tmp_path / "db" / "scmsrv.sqlite3"

    def test_from_environment(self, tmp_path: Path):
        env = {
            "SCMSRV_DATA": str(tmp_path),
            "SCMSRV_DATABASE": str(tmp_path / "env.sqlite3"),
            "SCMSRV_PUBLIC_URL": "https://env.example.com",
        }
        with patch.dict("os.environ", env, clear=True):
            auth_config, db_path = app_module.load_config()
        assert auth_config.public_url == "https://env.example.com"
        assert db_path == tmp_path / "env.sqlite3"

    def test_default_database(self, tmp_path: Path):
        with patch.dict("os.environ", {"SCMSRV_DATA": str(tmp_path)}, clear=True):
            _, db_path = app_module.load_config()
        assert db_path == tmp_path.resolve() / "scmsrv_data" / "scmsrv.sqlite3"


# =====================================================================
# Lifespan
# =====================================================================


class TestLifespan:
    async def test_startup_builds_services(self, tmp_path: Path):
        app = app_module.app
        with patch.dict("os.environ", {"SCMSRV_CONF": str(write_config(tmp_path))}, clear=True):
            try:
                async with app.router.lifespan_context(app):
                    assert isinstance(app.state.auth, AuthState)
                    assert isinstance(app.state.factory, FactoryResolver)
                    assert set(app.state.auth.providers) == {"github"}
                    assert app.state.auth.oauth2_redirect_uri == "https://che.example.com/api/oauth/callback"
                    assert (tmp_path / "db" / "scmsrv.sqlite3").is_file()
            finally:
                for attr in ("database", "auth", "factory"):
                    if hasattr(app.state, attr):
                        delattr(app.state, attr)


# =====================================================================
# Routing
# =====================================================================


class TestRoutes:
    @pytest.mark.parametrize(
        "path",
        [
            "/oauth",
            "/oauth/authenticate",
            "/oauth/callback",
            "/oauth/token",
            "/oauth/1.0/authenticate",
            "/oauth/1.0/callback",
            "/oauth/1.0/signature",
            "/factory/resolver",
            "/factory/token/refresh",
        ],
    )
    def test_registered_at_root_and_api(self, path: str):
        paths = {getattr(route, "path", None) for route in app_module.app.routes}
        assert path in paths
        assert f"/api{path}" in paths

    async def test_oauth_responses_not_cached(self, client: AsyncClient):
        resp = await client.get("/api/oauth", headers=bearer())
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.headers["Pragma"] == "no-cache"

    async def test_factory_responses_cacheable(self, client: AsyncClient):
        resp = await client.post("/factory/resolver", json={"url": "nope"})
        assert "Pragma" not in resp.headers

    async def test_api_error_shape(self, client: AsyncClient):
        resp = await client.get("/oauth/token", params={"oauth_provider": "github"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized", "message": "Authorization header is required"}
