"""OAuth 1.0a routes: authenticate, callback and request signing."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, RedirectResponse

from scmsrv.auth import AuthState, get_auth_state
from scmsrv.auth.errors import ApiError, OAuthError, OAuthErrorKind
from scmsrv.auth.identity import Subject, current_subject, require_subject
from scmsrv.auth.oauth1 import SignatureMethod, http_method_from_hint
from scmsrv.auth.session import remember_subject
from scmsrv.auth.state import encode_redirect_url, parse_query_state, redirect_with_error, safe_redirect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth/1.0", tags=["oauth"])


def _target(auth: AuthState, raw: str | None) -> str:
    return encode_redirect_url(safe_redirect(raw or "", auth.config.public_url))


@router.get("/authenticate")
async def authenticate(
    request: Request,
    oauth_provider: str | None = None,
    request_method: str | None = None,
    signature_method: str | None = None,
    redirect_after_login: str | None = None,
    auth: AuthState = Depends(get_auth_state),
    subject: Subject = Depends(require_subject),
) -> RedirectResponse:
    if not oauth_provider:
        raise ApiError.bad_request("Provider name required")
    if not redirect_after_login:
        raise ApiError.bad_request("Redirect after login required")
    if oauth_provider not in auth.oauth1:
        raise ApiError.bad_request(f"Unsupported OAuth provider: {oauth_provider}")

    authenticator = auth.oauth1.get_authenticator(oauth_provider)
    remember_subject(request, subject.id, subject.user_name)
    try:
        url = await authenticator.get_authenticate_url(
            str(request.url),
            http_method_from_hint(request_method),
            SignatureMethod.from_hint(signature_method),
            subject.id,
        )
    except OAuthError as exc:
        logger.warning("OAuth 1.0a authenticate failed for %s: %s", subject.id, exc.message)
        return RedirectResponse(
            url=redirect_with_error(_target(auth, redirect_after_login), exc.kind.error_code),
            status_code=307,
        )
    return RedirectResponse(url=url, status_code=307)


@router.get("/callback")
async def callback(
    request: Request,
    state: str = "",
    auth: AuthState = Depends(get_auth_state),
    subject: Subject | None = Depends(current_subject),
) -> RedirectResponse:
    params = parse_query_state(state)
    target = _target(auth, params.get("redirect_after_login"))
    provider = params.get("oauth_provider", "")
    if not provider:
        # single configured authenticator
        configured = [a.name for a in auth.oauth1]
        if len(configured) == 1:
            provider = configured[0]

    if provider not in auth.oauth1:
        logger.warning("OAuth 1.0a callback for unsupported provider %r", provider)
        return RedirectResponse(
            url=redirect_with_error(target, OAuthErrorKind.PROTOCOL_ERROR.error_code),
            status_code=307,
        )

    authenticator = auth.oauth1.get_authenticator(provider)
    try:
        user_id = await authenticator.callback(str(request.url))
    except OAuthError as exc:
        logger.warning("OAuth 1.0a callback failed (%s): %s", exc.kind.name, exc.message)
        return RedirectResponse(url=redirect_with_error(target, exc.kind.error_code), status_code=307)

    if subject is not None and subject.id == user_id:
        try:
            await auth.issue_oauth1_pat(authenticator, user_id, subject.user_name)
        except OAuthError as exc:
            # the factory resolver mints one lazily on the next refresh
            logger.warning("Could not mint Bitbucket Server PAT for %s: %s", user_id, exc.message)
    else:
        logger.info("No session identity for %s; PAT minting deferred", user_id)

    return RedirectResponse(url=target, status_code=307)


@router.get("/signature", response_class=PlainTextResponse)
async def signature(
    oauth_provider: str | None = None,
    request_url: str | None = None,
    request_method: str | None = None,
    auth: AuthState = Depends(get_auth_state),
    subject: Subject = Depends(require_subject),
) -> PlainTextResponse:
    if not oauth_provider:
        raise ApiError.bad_request("Provider name required")
    if not request_url:
        raise ApiError.bad_request("Request url required")
    if not request_method:
        raise ApiError.bad_request("Request method required")
    if oauth_provider not in auth.oauth1:
        raise ApiError.bad_request(f"Unsupported OAuth provider: {oauth_provider}")

    authenticator = auth.oauth1.get_authenticator(oauth_provider)
    try:
        header = authenticator.compute_authorization_header(subject.id, request_method, request_url)
    except OAuthError as exc:
        raise ApiError.unauthorized(exc.message) from exc
    return PlainTextResponse(header)
