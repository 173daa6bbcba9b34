"""create lrs_entities

Revision ID: 3b7c1e9d2a40
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7c1e9d2a40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "lrs_entities",
        sa.Column("table_name", sa.String(length=64), nullable=False),
        sa.Column("partition_key", sa.String(length=255), nullable=False),
        sa.Column("row_key", sa.String(length=512), nullable=False),
        sa.Column("properties", postgresql.JSONB(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("table_name", "partition_key", "row_key"),
    )
    op.create_index(
        "ix_lrs_entities_table_row",
        "lrs_entities",
        ["table_name", "row_key"],
    )


def downgrade() -> None:
    op.drop_index("ix_lrs_entities_table_row", table_name="lrs_entities")
    op.drop_table("lrs_entities")
