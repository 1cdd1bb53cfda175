from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from scmsrv.auth import (
    ApiError,
    AuthConfig,
    Subject,
    current_subject,
    load_auth_config,
    require_subject,
    setup_auth,
)
from scmsrv.auth.oauth1_routes import router as oauth1_router
from scmsrv.auth.routes import router as oauth_router
from scmsrv.config import ConfigManager, default_database_path
from scmsrv.db import Database
from scmsrv.scm import AuthorizationRequired, FactoryError, FactoryResolver
from scmsrv.secret_store import SqlSecretStore

logger = logging.getLogger("scmsrv")

# ----------------------------
# Configuration
# ----------------------------


def load_config() -> tuple[AuthConfig, Path]:
    """Return the auth configuration and database path.

    The TOML file named by ``SCMSRV_CONF`` wins; environment variables are
    the fallback.
    """
    cm = ConfigManager.load()
    if cm is not None:
        return cm.to_auth_config(), cm.global_config.database
    db_path = os.environ.get("SCMSRV_DATABASE")
    return load_auth_config(), Path(db_path) if db_path else default_database_path()


# ----------------------------
# Lifespan (async startup)
# ----------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    auth_config, db_path = load_config()

    database = Database(db_path)
    await database.init()

    auth = await setup_auth(auth_config, SqlSecretStore(database))
    app.state.database = database
    app.state.auth = auth
    app.state.factory = FactoryResolver(auth)
    try:
        yield
    finally:
        await database.dispose()


app = FastAPI(
    title="scmsrv",
    description="Devfile resolution and SCM authorization",
    version="1.0.0",
    lifespan=lifespan,
)

# Session middleware (required for redirect flows).  The callback arrives
# without gateway headers, so the signed cookie carries the identity.
_boot_config, _ = load_config()

app.add_middleware(
    SessionMiddleware,  # type: ignore[arg-type]  # Starlette typing limitation
    secret_key=_boot_config.session_secret,
    same_site="lax",
    https_only=_boot_config.public_url.startswith("https://"),
    max_age=60 * 60,  # one flow
)


# Token material must never be cached by browsers or proxies.
@app.middleware("http")
async def _no_store_oauth_responses(
    request: Request,
    call_next,  # noqa: ANN001
) -> Response:
    response = await call_next(request)
    if "/oauth" in request.url.path:
        response.headers["Cache-Control"] = "no-store"
        response.headers["Pragma"] = "no-cache"
    return response


@app.exception_handler(ApiError)
async def _api_error(request: Request, exc: ApiError) -> JSONResponse:  # noqa: ARG001
    return JSONResponse({"error": exc.error, "message": exc.message}, status_code=exc.status_code)


@app.exception_handler(AuthorizationRequired)
async def _authorization_required(
    request: Request,  # noqa: ARG001
    exc: AuthorizationRequired,
) -> JSONResponse:
    return JSONResponse(exc.to_json(), status_code=401)


@app.exception_handler(FactoryError)
async def _factory_error(request: Request, exc: FactoryError) -> JSONResponse:  # noqa: ARG001
    return JSONResponse({"error": "Bad Request", "message": exc.message}, status_code=400)


# ----------------------------
# Factory routes
# ----------------------------

factory_router = APIRouter(prefix="/factory", tags=["factory"])


def get_factory_resolver(request: Request) -> FactoryResolver:
    resolver = getattr(request.app.state, "factory", None)
    if resolver is None:
        raise RuntimeError("Factory resolver not configured; lifespan has not run")
    return resolver


@factory_router.post("/resolver")
async def resolve_factory(
    request: Request,
    resolver: FactoryResolver = Depends(get_factory_resolver),
    subject: Subject | None = Depends(current_subject),
) -> JSONResponse:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        raise ApiError.bad_request("Request body must be a JSON object") from None
    if not isinstance(payload, dict):
        raise ApiError.bad_request("Request body must be a JSON object")

    if subject is None:
        logger.warning("Resolving factory without user context; no PAT lookup")
    factory = await resolver.resolve(str(payload.get("url") or ""), subject)
    return JSONResponse(factory)


@factory_router.post("/token/refresh", status_code=204)
async def refresh_factory_token(
    url: str = "",
    resolver: FactoryResolver = Depends(get_factory_resolver),
    subject: Subject = Depends(require_subject),
) -> Response:
    if not url:
        raise ApiError.bad_request("Factory url required")
    await resolver.refresh_token(url, subject)
    return Response(status_code=204)


# Every router answers both at the root and under the API prefix.
for _prefix in dict.fromkeys(("", _boot_config.api_prefix.rstrip("/"))):
    app.include_router(oauth1_router, prefix=_prefix)
    app.include_router(oauth_router, prefix=_prefix)
    app.include_router(factory_router, prefix=_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
