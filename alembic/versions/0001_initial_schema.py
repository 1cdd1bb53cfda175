"""Initial schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    op.create_table(
        "secrets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("namespace", sa.Text, nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("labels", sa.JSON, nullable=False),
        sa.Column("annotations", sa.JSON, nullable=False),
        sa.Column("data", sa.JSON, nullable=False),
        sa.Column("created_ts", sa.Integer, nullable=False),
        sa.Column("updated_ts", sa.Integer, nullable=False),
        sa.UniqueConstraint("namespace", "name", name="uq_secrets_namespace_name"),
    )
    op.create_index("idx_secrets_namespace", "secrets", ["namespace"])


def downgrade() -> None:
    op.drop_index("idx_secrets_namespace", table_name="secrets")
    op.drop_table("secrets")
