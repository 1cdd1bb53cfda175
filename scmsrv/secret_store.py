"""Secret store collaborator.

The credential store only relies on the ``SecretStore`` protocol:
list-by-label-selector, get, create, replace and delete over
``(namespace, name) -> {labels, annotations, data}``.  ``SqlSecretStore``
implements it on the service's SQLite database; values in ``data`` are
base64 strings, as in Kubernetes secrets.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Mapping, Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from scmsrv.db import Database
from scmsrv.models import Secret

logger = logging.getLogger(__name__)


class SecretStoreError(Exception):
    """Base class for secret store failures."""


class SecretNotFound(SecretStoreError):
    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"secret {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name


class SecretAlreadyExists(SecretStoreError):
    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"secret {namespace}/{name} already exists")
        self.namespace = namespace
        self.name = name


@dataclass(frozen=True)
class SecretRecord:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)  # base64 values


def parse_label_selector(selector: str | Mapping[str, str]) -> dict[str, str]:
    """Turn ``"a=b,c=d"`` (or a mapping) into an equality-match dict."""
    if not isinstance(selector, str):
        return dict(selector)
    result: dict[str, str] = {}
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        key, sep, value = term.partition("=")
        if not sep:
            raise ValueError(f"Unsupported label selector term {term!r}")
        result[key.strip()] = value.lstrip("=").strip()
    return result


@runtime_checkable
class SecretStore(Protocol):
    async def list(
        self, namespace: str, label_selector: str | Mapping[str, str]
    ) -> list[SecretRecord]: ...

    async def get(self, namespace: str, name: str) -> SecretRecord: ...

    async def create(self, namespace: str, secret: SecretRecord) -> SecretRecord: ...

    async def replace(self, namespace: str, secret: SecretRecord) -> SecretRecord: ...

    async def delete(self, namespace: str, name: str) -> None: ...


def _to_record(row: Secret) -> SecretRecord:
    return SecretRecord(
        name=row.name,
        labels=dict(row.labels or {}),
        annotations=dict(row.annotations or {}),
        data=dict(row.data or {}),
    )


class SqlSecretStore:
    """``SecretStore`` backed by the ``secrets`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def list(
        self, namespace: str, label_selector: str | Mapping[str, str]
    ) -> list[SecretRecord]:
        wanted = parse_label_selector(label_selector)
        async with self._db.session() as sess:
            rows = (
                await sess.execute(
                    select(Secret).where(Secret.namespace == namespace).order_by(Secret.id)
                )
            ).scalars()
            return [
                _to_record(row)
                for row in rows
                if all((row.labels or {}).get(k) == v for k, v in wanted.items())
            ]

    async def get(self, namespace: str, name: str) -> SecretRecord:
        async with self._db.session() as sess:
            row = await self._row(sess, namespace, name)
            if row is None:
                raise SecretNotFound(namespace, name)
            return _to_record(row)

    async def create(self, namespace: str, secret: SecretRecord) -> SecretRecord:
        now = int(time.time())
        try:
            async with self._db.session() as sess:
                sess.add(
                    Secret(
                        namespace=namespace,
                        name=secret.name,
                        labels=dict(secret.labels),
                        annotations=dict(secret.annotations),
                        data=dict(secret.data),
                        created_ts=now,
                        updated_ts=now,
                    )
                )
        except IntegrityError as exc:
            raise SecretAlreadyExists(namespace, secret.name) from exc
        logger.debug("Created secret %s/%s", namespace, secret.name)
        return secret

    async def replace(self, namespace: str, secret: SecretRecord) -> SecretRecord:
        async with self._db.session() as sess:
            row = await self._row(sess, namespace, secret.name)
            if row is None:
                raise SecretNotFound(namespace, secret.name)
            row.labels = dict(secret.labels)
            row.annotations = dict(secret.annotations)
            row.data = dict(secret.data)
            row.updated_ts = int(time.time())
        return secret

    async def delete(self, namespace: str, name: str) -> None:
        async with self._db.session() as sess:
            result = await sess.execute(
                delete(Secret).where(Secret.namespace == namespace, Secret.name == name)
            )
            if result.rowcount == 0:
                raise SecretNotFound(namespace, name)
        logger.debug("Deleted secret %s/%s", namespace, name)

    @staticmethod
    async def _row(sess, namespace: str, name: str) -> Secret | None:
        return (
            await sess.execute(
                select(Secret).where(Secret.namespace == namespace, Secret.name == name)
            )
        ).scalar_one_or_none()
