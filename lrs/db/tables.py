"""SQLAlchemy table definitions.

The record store keeps every logical table (statements, state, progress,
verb statistics) in one generic entity table keyed by
(table_name, partition_key, row_key).  Repos convert between rows and
``Entity`` dataclasses; nothing outside ``lrs/repos`` touches this module.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from lrs.db.engine import Base


class EntityRow(Base):
    __tablename__ = "lrs_entities"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    partition_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    row_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    properties: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        # Cross-partition lookups (statement by id, progress by course)
        Index("ix_lrs_entities_table_row", "table_name", "row_key"),
    )
