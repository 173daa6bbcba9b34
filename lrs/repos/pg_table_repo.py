"""PostgreSQL implementation of TableRepo."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import and_, delete, or_, select, tuple_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lrs.core.errors import StoreError, ValidationError
from lrs.core.filters import Comparison, parse_filter
from lrs.db.tables import EntityRow
from lrs.repos.table_repo import (
    DEFAULT_PAGE_SIZE,
    Entity,
    EntityPage,
    decode_position,
    encode_position,
)


class PgTableRepo:
    """Satisfies the TableRepo Protocol using one JSONB entity table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, table: str, entity: Entity) -> None:
        now = int(time.time())
        stmt = insert(EntityRow).values(
            table_name=table,
            partition_key=entity.partition_key,
            row_key=entity.row_key,
            properties=entity.properties,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                EntityRow.table_name,
                EntityRow.partition_key,
                EntityRow.row_key,
            ],
            set_={"properties": stmt.excluded.properties, "updated_at": now},
        )
        with _translate_errors():
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()

    async def get(self, table: str, partition_key: str, row_key: str) -> Entity | None:
        with _translate_errors():
            async with self._session_factory() as session:
                row = await session.get(EntityRow, (table, partition_key, row_key))
        if row is None:
            return None
        return _row_to_entity(row)

    async def delete(self, table: str, partition_key: str, row_key: str) -> bool:
        stmt = delete(EntityRow).where(
            EntityRow.table_name == table,
            EntityRow.partition_key == partition_key,
            EntityRow.row_key == row_key,
        )
        with _translate_errors():
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        return result.rowcount > 0

    async def query(
        self,
        table: str,
        filter: str = "",
        *,
        partition_key: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        continuation: str | None = None,
    ) -> EntityPage:
        stmt = select(EntityRow).where(EntityRow.table_name == table)
        if partition_key is not None:
            stmt = stmt.where(EntityRow.partition_key == partition_key)
        if continuation:
            after_pk, after_rk = decode_position(continuation)
            stmt = stmt.where(
                tuple_(EntityRow.partition_key, EntityRow.row_key)
                > tuple_(after_pk, after_rk)
            )
        parsed = parse_filter(filter)
        if parsed:
            stmt = stmt.where(
                or_(*(and_(*(_condition(c) for c in group)) for group in parsed))
            )
        stmt = stmt.order_by(EntityRow.partition_key, EntityRow.row_key).limit(
            page_size + 1
        )

        with _translate_errors():
            async with self._session_factory() as session:
                rows = list((await session.execute(stmt)).scalars())

        entities = [_row_to_entity(r) for r in rows[:page_size]]
        if len(rows) > page_size:
            last = entities[-1]
            return EntityPage(entities, encode_position(last.partition_key, last.row_key))
        return EntityPage(entities, None)


def _condition(c: Comparison):
    if c.field == "PartitionKey":
        column = EntityRow.partition_key
    elif c.field == "RowKey":
        column = EntityRow.row_key
    else:
        column = EntityRow.properties[c.field].astext

    if c.operator == "eq":
        return column == c.value
    if c.operator == "ne":
        # Missing properties compare as "not equal", same as the in-memory store
        return or_(column.is_(None), column != c.value)
    # Range comparisons use code point order, same as the in-memory store
    column = column.collate("C")
    if c.operator == "gt":
        return column > c.value
    if c.operator == "ge":
        return column >= c.value
    if c.operator == "lt":
        return column < c.value
    if c.operator == "le":
        return column <= c.value
    raise ValidationError(f"Invalid filter operator: {c.operator!r}")


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map driver exceptions onto StoreError so the retry executor can classify them."""
    try:
        yield
    except IntegrityError as e:
        raise StoreError(f"Integrity error: {e.orig}", status_code=409) from e
    except (OperationalError, InterfaceError) as e:
        # Connection-level trouble: no status, always retryable
        raise StoreError(f"Database unavailable: {e.orig}", status_code=None) from e
    except DBAPIError as e:
        raise StoreError(f"Database error: {e.orig}", status_code=500) from e


def _row_to_entity(row: EntityRow) -> Entity:
    return Entity(
        partition_key=row.partition_key,
        row_key=row.row_key,
        properties=dict(row.properties or {}),
    )
