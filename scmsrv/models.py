"""SQLAlchemy ORM models for scmsrv."""

from __future__ import annotations

from sqlalchemy import JSON, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Secret(Base):
    """A namespaced secret shaped like a Kubernetes ``Secret``.

    ``data`` maps keys to base64-encoded values.
    """

    __tablename__ = "secrets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    namespace: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    labels: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    annotations: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    data: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_ts: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_secrets_namespace_name"),
        Index("idx_secrets_namespace", "namespace"),
    )
