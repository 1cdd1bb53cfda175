"""Personal access token (PAT) store.

PATs are kept as labeled secrets in the caller's namespace::

    name:        personal-access-token-<random display name>
    labels:      app.kubernetes.io/component=scm-personal-access-token
                 app.kubernetes.io/part-of=che.eclipse.org
    annotations: che.eclipse.org/che-userid
                 che.eclipse.org/scm-provider-name
                 che.eclipse.org/scm-url
                 che.eclipse.org/scm-personal-access-token-name
    data:        token (base64)

Tokens issued through an OAuth flow carry the token name
``oauth2-<provider>``; that prefix is what marks them OAuth-issued.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from scmsrv.secret_store import SecretNotFound, SecretRecord, SecretStore

logger = logging.getLogger(__name__)

SECRET_NAME_PREFIX = "personal-access-token-"
OAUTH_TOKEN_NAME_PREFIX = "oauth2-"

LABELS = {
    "app.kubernetes.io/component": "scm-personal-access-token",
    "app.kubernetes.io/part-of": "che.eclipse.org",
}
LABEL_SELECTOR = ",".join(f"{k}={v}" for k, v in LABELS.items())

ANNOTATION_USER_ID = "che.eclipse.org/che-userid"
ANNOTATION_PROVIDER = "che.eclipse.org/scm-provider-name"
ANNOTATION_SCM_URL = "che.eclipse.org/scm-url"
ANNOTATION_TOKEN_NAME = "che.eclipse.org/scm-personal-access-token-name"

_DISPLAY_NAME_ALPHABET = string.ascii_lowercase + string.digits
_K8S_NAME_RE = re.compile(r"[^a-z0-9-]+")


def random_display_name(length: int = 5) -> str:
    """Short random identifier for a PAT; never derived from user input."""
    return "".join(secrets.choice(_DISPLAY_NAME_ALPHABET) for _ in range(length))


@dataclass(frozen=True, slots=True)
class PersonalAccessToken:
    token_name: str
    token_data: str
    git_provider: str
    git_provider_endpoint: str
    owner_user_id: str
    is_oauth: bool = False
    display_name: str = field(default_factory=random_display_name)

    @property
    def secret_name(self) -> str:
        return f"{SECRET_NAME_PREFIX}{self.display_name}"


def oauth_token_name(provider: str) -> str:
    return f"{OAUTH_TOKEN_NAME_PREFIX}{provider}"


def user_namespace(user_name: str, suffix: str = "-che") -> str:
    """Namespace holding a user's secrets, e.g. ``alice-che``."""
    name = _K8S_NAME_RE.sub("-", user_name.lower()).strip("-") or "user"
    return f"{name}{suffix}"


def scm_url_from_repo_url(url: str) -> str:
    """``scheme://host[:port]`` of a repository URL ("" when unparsable)."""
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return ""
    if not parts.scheme or not parts.hostname:
        return ""
    return f"{parts.scheme}://{parts.hostname}{f':{port}' if port else ''}"


def _normalize_endpoint(url: str) -> str:
    """Host (and port) only, lowercased, for endpoint comparison."""
    try:
        parts = urlsplit(url if "://" in url else f"https://{url}")
        host = (parts.hostname or "").lower()
        return f"{host}:{parts.port}" if parts.port else host
    except ValueError:
        return url.lower().rstrip("/")


def classify_provider(url: str) -> str:
    """Guess which SCM hosts *url*; decides the OAuth flow to offer."""
    try:
        parts = urlsplit(url.strip() if "://" in url else f"https://{url.strip()}")
        host = (parts.hostname or "").lower()
    except ValueError:
        return "unknown"
    path = parts.path

    if "github" in host:
        return "github"
    if "gitlab" in host:
        return "gitlab"
    if not host.endswith("bitbucket.org") and (
        path.startswith("/scm/") or "/projects/" in path or "/users/" in path
    ):
        return "bitbucket-server"
    if host.endswith("bitbucket.org"):
        return "bitbucket"
    if host == "dev.azure.com" or host.endswith(".visualstudio.com") or "azure" in host:
        return "azure-devops"
    return "unknown"


class PatStore:
    """Reads and writes ``PersonalAccessToken`` secrets."""

    def __init__(self, store: SecretStore) -> None:
        self._store = store

    # ---- lookup

    async def list_all(self, namespace: str) -> list[PersonalAccessToken]:
        records = await self._store.list(namespace, LABEL_SELECTOR)
        tokens = []
        for record in records:
            pat = self._from_record(record)
            if pat is not None:
                tokens.append(pat)
        return tokens

    async def get(
        self, namespace: str, provider: str, endpoint: str | None = None
    ) -> PersonalAccessToken | None:
        """First PAT for *provider* (and *endpoint*, compared by host)."""
        wanted_endpoint = _normalize_endpoint(endpoint) if endpoint else None
        for pat in await self.list_all(namespace):
            if pat.git_provider.lower() != provider.lower():
                continue
            if wanted_endpoint and _normalize_endpoint(pat.git_provider_endpoint) != wanted_endpoint:
                continue
            return pat
        return None

    # ---- mutation

    async def create(self, namespace: str, pat: PersonalAccessToken) -> PersonalAccessToken:
        """Write *pat*, replacing any secret with the same name.

        An OAuth-issued PAT also supersedes earlier OAuth-issued PATs of
        the same user and provider.
        """
        if pat.is_oauth:
            await self.delete_oauth_tokens(namespace, pat.owner_user_id, pat.git_provider)
        await self.delete(namespace, pat)
        await self._store.create(namespace, self._to_record(pat))
        logger.info(
            "Stored %s PAT %s for user %s in %s",
            pat.git_provider,
            pat.token_name,
            pat.owner_user_id,
            namespace,
        )
        return pat

    async def delete(self, namespace: str, pat: PersonalAccessToken) -> bool:
        """Remove *pat*'s secret; return ``False`` when it did not exist."""
        try:
            await self._store.delete(namespace, pat.secret_name)
        except SecretNotFound:
            return False
        return True

    async def delete_oauth_tokens(self, namespace: str, user_id: str, provider: str) -> int:
        """Drop every OAuth-issued PAT of *user_id* for *provider*."""
        removed = 0
        for pat in await self.list_all(namespace):
            if (
                pat.is_oauth
                and pat.owner_user_id == user_id
                and pat.git_provider.lower() == provider.lower()
            ):
                removed += await self.delete(namespace, pat)
        return removed

    # ---- conversion

    @staticmethod
    def _to_record(pat: PersonalAccessToken) -> SecretRecord:
        return SecretRecord(
            name=pat.secret_name,
            labels=dict(LABELS),
            annotations={
                ANNOTATION_USER_ID: pat.owner_user_id,
                ANNOTATION_PROVIDER: pat.git_provider,
                ANNOTATION_SCM_URL: pat.git_provider_endpoint,
                ANNOTATION_TOKEN_NAME: pat.token_name,
            },
            data={"token": base64.b64encode(pat.token_data.encode()).decode("ascii")},
        )

    @staticmethod
    def _from_record(record: SecretRecord) -> PersonalAccessToken | None:
        ann = record.annotations
        provider = ann.get(ANNOTATION_PROVIDER)
        raw = record.data.get("token")
        if not provider or raw is None:
            logger.warning("Skipping malformed PAT secret %s", record.name)
            return None
        try:
            token = base64.b64decode(raw).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning("Skipping PAT secret %s with undecodable token", record.name)
            return None

        display_name = record.name.removeprefix(SECRET_NAME_PREFIX)
        token_name = ann.get(ANNOTATION_TOKEN_NAME) or display_name
        return PersonalAccessToken(
            display_name=display_name,
            token_name=token_name,
            token_data=token,
            git_provider=provider,
            git_provider_endpoint=ann.get(ANNOTATION_SCM_URL, ""),
            owner_user_id=ann.get(ANNOTATION_USER_ID, ""),
            is_oauth=token_name.startswith(OAUTH_TOKEN_NAME_PREFIX),
        )
