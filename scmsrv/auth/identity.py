"""Caller identity.

Resolution order:

1. ``gap-auth`` header set by the workspace gateway;
2. ``X-Forwarded-User`` / ``X-Forwarded-Preferred-Username`` /
   ``X-Forwarded-Email`` from an auth proxy;
3. ``Authorization: Bearer``, either the test format ``<id>:<name>`` or a
   JWT whose claims are read without verification (the gateway already
   verified it).  Any other bearer token maps to the fixed ``che-user``;
4. the identity remembered in the session when a redirect flow started.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import jwt
from fastapi import Request

from scmsrv.auth.errors import ApiError
from scmsrv.auth.session import recall_subject

logger = logging.getLogger(__name__)

FALLBACK_USER = "che-user"


@dataclass(frozen=True, slots=True)
class Subject:
    id: str
    user_name: str
    token: str | None = None
    gateway: bool = False  # identity asserted by a trusted proxy header


def sanitize_username(raw: str) -> str:
    """``alice@example.com`` -> ``alice``; ``kube:admin`` -> ``admin``."""
    name = raw.strip().split("@", 1)[0]
    return name.rsplit(":", 1)[-1]


def _claim(claims: Mapping[str, Any], key: str) -> str | None:
    value = claims.get(key)
    if not value or value == "undefined":
        return None
    return str(value)


def subject_from_bearer(token: str) -> Subject:
    parts = token.split(":")
    if len(parts) == 2:
        return Subject(id=parts[0], user_name=parts[1], token=token)

    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        logger.warning("Non-JWT bearer token; falling back to %s", FALLBACK_USER)
        return Subject(id=FALLBACK_USER, user_name=FALLBACK_USER, token=token)

    sub = _claim(claims, "sub")
    email = _claim(claims, "email")
    name = (
        _claim(claims, "name")
        or _claim(claims, "username")
        or _claim(claims, "preferred_username")
        or (email.split("@", 1)[0] if email else None)
        or sub
    )
    return Subject(
        id=sub or name or FALLBACK_USER,
        user_name=name or FALLBACK_USER,
        token=token,
    )


def subject_from_headers(headers: Mapping[str, str]) -> Subject | None:
    gap = headers.get("gap-auth")
    if gap:
        name = sanitize_username(gap)
        return Subject(id=name, user_name=name, gateway=True)

    forwarded = (
        headers.get("x-forwarded-user")
        or headers.get("x-forwarded-preferred-username")
        or headers.get("x-forwarded-email")
    )
    if forwarded:
        name = sanitize_username(forwarded)
        if name:
            return Subject(id=name, user_name=name, gateway=True)

    authorization = headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        return subject_from_bearer(authorization[len("Bearer ") :].strip())
    return None


# ------------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------------


async def current_subject(request: Request) -> Subject | None:
    """FastAPI dependency: the caller, or ``None`` when anonymous."""
    subject = subject_from_headers(request.headers)
    if subject is not None:
        return subject
    if "session" in request.scope:
        remembered = recall_subject(request)
        if remembered:
            return Subject(id=remembered["id"], user_name=remembered["user_name"])
    return None


async def require_subject(request: Request) -> Subject:
    """FastAPI dependency: the caller; 401 JSON when anonymous."""
    subject = await current_subject(request)
    if subject is None:
        raise ApiError.unauthorized()
    return subject
