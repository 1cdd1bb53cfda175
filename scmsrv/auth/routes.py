"""OAuth 2.0 routes: provider listing, authenticate, callback and tokens."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from jinja2 import Environment, PackageLoader, select_autoescape

from scmsrv.auth import AuthState, get_auth_state
from scmsrv.auth.errors import ApiError, OAuthError, OAuthErrorKind
from scmsrv.auth.identity import Subject, current_subject, require_subject
from scmsrv.auth.session import remember_subject
from scmsrv.auth.state import (
    OAuthState,
    decode_state,
    encode_redirect_url,
    encode_state,
    redirect_with_error,
    safe_redirect,
)
from scmsrv.credentials import PersonalAccessToken, oauth_token_name, user_namespace
from scmsrv.secret_store import SecretStoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])

_jinja_env = Environment(
    loader=PackageLoader("scmsrv", "templates"),
    autoescape=select_autoescape(["html"]),
)

DEFAULT_AFTER_LOGIN = "/dashboard/"
ANONYMOUS = "anonymous"


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _authenticator_links(href: str, name: str) -> list[dict[str, object]]:
    return [
        {
            "method": "GET",
            "rel": "Authenticate URL",
            "href": href,
            "parameters": [
                {"name": "oauth_provider", "defaultValue": name, "required": True, "valid": [name]},
                {"name": "redirect_after_login", "defaultValue": "", "required": False, "valid": []},
            ],
        }
    ]


def _provider_or_400(auth: AuthState, name: str | None):
    if not name:
        raise ApiError.bad_request("oauth_provider parameter is required")
    provider = auth.providers.get(name)
    if provider is None:
        raise ApiError.bad_request(f"OAuth provider '{name}' is not registered")
    return provider


# ------------------------------------------------------------------
# Routes
# ------------------------------------------------------------------


@router.get("")
async def list_authenticators(
    auth: AuthState = Depends(get_auth_state),
    subject: Subject = Depends(require_subject),  # noqa: ARG001
) -> JSONResponse:
    """Every configured authenticator, OAuth 2.0 and OAuth 1.0a."""
    result: list[dict[str, object]] = []
    for name, provider in auth.providers.items():
        result.append(
            {
                "name": name,
                "endpointUrl": provider.endpoint,
                "links": _authenticator_links(f"{auth.config.api_base}/oauth/authenticate", name),
            }
        )
    for authenticator in auth.oauth1:
        result.append(
            {
                "name": authenticator.name,
                "endpointUrl": authenticator.endpoint,
                "links": _authenticator_links(
                    f"{auth.config.api_base}/oauth/1.0/authenticate", authenticator.name
                ),
            }
        )
    return JSONResponse(result)


@router.get("/authenticate")
async def authenticate(
    request: Request,
    oauth_provider: str | None = None,
    scope: str | None = None,
    redirect_after_login: str | None = None,
    auth: AuthState = Depends(get_auth_state),
    subject: Subject | None = Depends(current_subject),
) -> RedirectResponse:
    provider = _provider_or_400(auth, oauth_provider)

    user_id = subject.id if subject else ANONYMOUS
    user_name = subject.user_name if subject else ANONYMOUS
    if subject is not None:
        remember_subject(request, subject.id, subject.user_name)

    state = OAuthState(
        redirect_after_login=redirect_after_login or DEFAULT_AFTER_LOGIN,
        provider=provider.name,
        user_id=user_id,
        user_name=user_name,
        namespace=user_namespace(user_name, auth.config.namespace_suffix),
    )
    url = await provider.get_authorize_url(
        state=encode_state(state), redirect_uri=auth.oauth2_redirect_uri, scope=scope
    )
    logger.info("Redirecting %s to OAuth provider %s", user_id, provider.name)
    return RedirectResponse(url=url, status_code=302)


@router.get("/callback")
async def callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    auth: AuthState = Depends(get_auth_state),
    subject: Subject | None = Depends(current_subject),
) -> Response:
    if error:
        # an inline page instead of a redirect: a misconfigured app would loop
        logger.warning("OAuth provider reported error %s", error)
        html = _jinja_env.get_template("oauth_error.html").render(
            error=error, description=error_description or ""
        )
        return HTMLResponse(content=html, status_code=400)

    if not code:
        raise ApiError.bad_request("Authorization code is required")

    decoded = decode_state(state)
    target = encode_redirect_url(safe_redirect(decoded.redirect_after_login, auth.config.public_url))

    provider = auth.providers.get(decoded.provider or "")
    if provider is None:
        logger.warning("OAuth callback for unknown provider %s", decoded.provider)
        return RedirectResponse(
            url=redirect_with_error(target, OAuthErrorKind.PROTOCOL_ERROR.error_code),
            status_code=302,
        )

    if subject is not None:
        user_id, user_name = subject.id, subject.user_name
        namespace = auth.namespace_for(subject)
    else:
        user_id = decoded.user_id or ANONYMOUS
        user_name = decoded.user_name or ANONYMOUS
        namespace = decoded.namespace or user_namespace(user_name, auth.config.namespace_suffix)

    try:
        token = await provider.exchange_code(code=code, redirect_uri=auth.oauth2_redirect_uri)
    except OAuthError as exc:
        logger.warning("OAuth code exchange with %s failed: %s", provider.name, exc.message)
        return RedirectResponse(url=redirect_with_error(target, exc.kind.error_code), status_code=302)

    if user_name == ANONYMOUS:
        auth.tokens.set(auth.token_key(user_id, provider.name), token.access_token)
        return RedirectResponse(url=target, status_code=302)

    try:
        await auth.pats.create(
            namespace,
            PersonalAccessToken(
                token_name=oauth_token_name(provider.name),
                token_data=token.access_token,
                git_provider=provider.name,
                git_provider_endpoint=provider.endpoint,
                owner_user_id=user_id,
                is_oauth=True,
            ),
        )
    except SecretStoreError:
        logger.exception("Could not store %s token for %s", provider.name, user_id)
        auth.tokens.set(auth.token_key(user_id, provider.name), token.access_token)
    return RedirectResponse(url=target, status_code=302)


@router.get("/token")
async def get_token(
    oauth_provider: str | None = None,
    auth: AuthState = Depends(get_auth_state),
    subject: Subject = Depends(require_subject),
) -> JSONResponse:
    if not oauth_provider:
        raise ApiError.bad_request("OAuth provider is required")

    cached = auth.tokens.get(auth.token_key(subject.id, oauth_provider))
    if cached:
        return JSONResponse({"token": cached, "scope": ""})

    pat = await auth.pats.get(auth.namespace_for(subject), oauth_provider)
    if pat is not None and pat.is_oauth and pat.token_data:
        return JSONResponse({"token": pat.token_data, "scope": ""})

    raise ApiError.unauthorized(f"OAuth token for user {subject.id} was not found")


@router.delete("/token", status_code=204)
async def invalidate_token(
    oauth_provider: str | None = None,
    auth: AuthState = Depends(get_auth_state),
    subject: Subject = Depends(require_subject),
) -> Response:
    if not oauth_provider:
        raise ApiError.bad_request("OAuth provider is required")

    auth.tokens.delete(auth.token_key(subject.id, oauth_provider))
    if oauth_provider in auth.oauth1:
        auth.oauth1.get_authenticator(oauth_provider).forget(subject.id)
    removed = await auth.pats.delete_oauth_tokens(
        auth.namespace_for(subject), subject.id, oauth_provider
    )
    logger.info("Revoked %d OAuth token(s) of %s for %s", removed, subject.id, oauth_provider)
    return Response(status_code=204)
