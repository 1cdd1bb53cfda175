"""Redirect-state codec.

The ``state`` value travels to an SCM provider and comes back on the
callback.  It carries where to send the browser afterwards and who started
the flow, because the callback request may arrive without the caller's
gateway headers.

Two encodings are accepted when decoding:

* base64(JSON), which is what this service produces;
* a URL-encoded query string, used by the OAuth 1.0a callback and by
  older callers.

Anything else degrades to a default redirect instead of raising.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import parse_qsl, quote, unquote, urlparse

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT = "/"

# encodeURIComponent leaves these unescaped in addition to the unreserved set
_COMPONENT_SAFE = "!*'()"


@dataclass(frozen=True, slots=True)
class OAuthState:
    redirect_after_login: str = DEFAULT_REDIRECT
    provider: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    namespace: str | None = None

    def to_dict(self) -> dict[str, str]:
        data = {
            "redirect_after_login": self.redirect_after_login,
            "oauth_provider": self.provider,
            "userId": self.user_id,
            "userName": self.user_name,
            "namespace": self.namespace,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, object], default_redirect: str = DEFAULT_REDIRECT
    ) -> OAuthState:
        def _str(key: str) -> str | None:
            value = data.get(key)
            return str(value) if value not in (None, "") else None

        return cls(
            redirect_after_login=_str("redirect_after_login") or default_redirect,
            provider=_str("oauth_provider"),
            user_id=_str("userId"),
            user_name=_str("userName"),
            namespace=_str("namespace"),
        )


def encode_state(state: OAuthState) -> str:
    """Serialise *state* as base64(JSON)."""
    raw = json.dumps(state.to_dict(), separators=(",", ":"))
    return base64.b64encode(raw.encode()).decode("ascii")


def parse_query_state(state: str) -> dict[str, str]:
    """Decode a URL-encoded query string state into a flat dict."""
    return dict(parse_qsl(state, keep_blank_values=True))


def decode_state(state: str | None, default_redirect: str = DEFAULT_REDIRECT) -> OAuthState:
    """Recover an ``OAuthState`` from *state*, never raising."""
    if not state:
        return OAuthState(redirect_after_login=default_redirect)

    try:
        data = json.loads(base64.b64decode(state, validate=True).decode("utf-8"))
        if isinstance(data, dict):
            return OAuthState.from_mapping(data, default_redirect)
    except ValueError:
        pass

    # a fully escaped query string carries no bare separators
    query = parse_query_state(state if "=" in state else unquote(state))
    if query:
        return OAuthState.from_mapping(query, default_redirect)

    logger.warning("Could not decode OAuth state (%d chars); using default redirect", len(state))
    return OAuthState(redirect_after_login=default_redirect)


# ------------------------------------------------------------------
# Redirect targets
# ------------------------------------------------------------------


def safe_redirect(raw: str, public_url: str, default: str = DEFAULT_REDIRECT) -> str:
    """Sanitise *raw* to prevent open-redirect attacks.

    Only relative URLs or URLs whose origin matches our app are allowed.
    """
    if not raw:
        return default
    parsed = urlparse(raw)
    # Relative path → always safe
    if not parsed.scheme and not parsed.netloc:
        return raw
    # Absolute → must match our origin
    app = urlparse(public_url)
    if parsed.scheme == app.scheme and parsed.netloc == app.netloc:
        return raw
    logger.warning("Refusing off-site redirect target %s", parsed.netloc)
    return default


def encode_redirect_url(url: str) -> str:
    """Percent-encode the query of *url* when it contains ``{`` or ``}``.

    Scheme, host, path and fragment are left untouched.  URLs without
    braces, including already-encoded ones, are returned unchanged.
    """
    if "{" not in url and "}" not in url:
        return url

    base, hash_sign, fragment = url.partition("#")
    path, question, query = base.partition("?")
    if not question:
        return url
    return f"{path}?{quote(query, safe=_COMPONENT_SAFE)}{hash_sign}{fragment}"


def redirect_with_error(url: str, error_code: str) -> str:
    """Repair *url* and append ``error_code=<error_code>`` to its query."""
    url = encode_redirect_url(url)
    base, hash_sign, fragment = url.partition("#")
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}error_code={quote(error_code, safe='')}{hash_sign}{fragment}"
