"""Storage collaborator: partitioned key/value tables.

Every record is an ``Entity`` addressed by (partition key, row key) with
a flat dict of properties.  The operations mirror what a managed table
service offers:

  upsert  - create or replace (last write wins per key)
  get     - point read, ``None`` when missing
  delete  - delete-if-exists, ``False`` when there was nothing to delete
  query   - scan ordered by (partition key, row key), optionally pinned
            to one partition, filtered by a ``build_filter`` expression,
            one page at a time with an opaque continuation token

Filters may also reference the ``PartitionKey`` and ``RowKey``
pseudo-fields.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from lrs.core.errors import ValidationError
from lrs.core.filters import matches, parse_filter

STATEMENTS_TABLE = "xapiStatements"
STATE_TABLE = "xapiState"
PROGRESS_TABLE = "UserProgress"
ATTEMPTS_TABLE = "CourseAttempts"
VERBS_TABLE = "VerbStatistics"

DEFAULT_PAGE_SIZE = 1000


@dataclass(frozen=True, slots=True)
class Entity:
    partition_key: str
    row_key: str
    properties: dict = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EntityPage:
    entities: list[Entity]
    continuation: str | None = None


@runtime_checkable
class TableRepo(Protocol):
    async def upsert(self, table: str, entity: Entity) -> None: ...
    async def get(self, table: str, partition_key: str, row_key: str) -> Entity | None: ...
    async def delete(self, table: str, partition_key: str, row_key: str) -> bool: ...
    async def query(
        self,
        table: str,
        filter: str = "",
        *,
        partition_key: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        continuation: str | None = None,
    ) -> EntityPage: ...


def encode_position(partition_key: str, row_key: str) -> str:
    """Continuation token meaning "resume after this key"."""
    raw = json.dumps([partition_key, row_key], separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_position(token: str) -> tuple[str, str]:
    try:
        pk, rk = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (ValueError, TypeError, binascii.Error):
        raise ValidationError("Malformed continuation token") from None
    if not isinstance(pk, str) or not isinstance(rk, str):
        raise ValidationError("Malformed continuation token")
    return pk, rk


async def iterate_entities(
    repo: TableRepo,
    table: str,
    filter: str = "",
    *,
    partition_key: str | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> AsyncIterator[Entity]:
    """Follow continuation tokens until the scan is exhausted."""
    continuation: str | None = None
    while True:
        page = await repo.query(
            table,
            filter,
            partition_key=partition_key,
            page_size=page_size,
            continuation=continuation,
        )
        for entity in page.entities:
            yield entity
        if page.continuation is None:
            return
        continuation = page.continuation


class InMemoryTableRepo:
    """In-memory tables for tests and local dev - no database needed."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[tuple[str, str], dict]] = {}

    async def upsert(self, table: str, entity: Entity) -> None:
        rows = self._tables.setdefault(table, {})
        rows[(entity.partition_key, entity.row_key)] = copy.deepcopy(entity.properties)

    async def get(self, table: str, partition_key: str, row_key: str) -> Entity | None:
        props = self._tables.get(table, {}).get((partition_key, row_key))
        if props is None:
            return None
        return Entity(partition_key, row_key, copy.deepcopy(props))

    async def delete(self, table: str, partition_key: str, row_key: str) -> bool:
        return self._tables.get(table, {}).pop((partition_key, row_key), None) is not None

    async def query(
        self,
        table: str,
        filter: str = "",
        *,
        partition_key: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        continuation: str | None = None,
    ) -> EntityPage:
        parsed = parse_filter(filter)
        after = decode_position(continuation) if continuation else None
        rows = self._tables.get(table, {})

        page: list[Entity] = []
        for key in sorted(rows):
            pk, rk = key
            if partition_key is not None and pk != partition_key:
                continue
            if after is not None and key <= after:
                continue
            props = rows[key]
            view = {**props, "PartitionKey": pk, "RowKey": rk}
            if not matches(parsed, view):
                continue
            if len(page) == page_size:
                last = page[-1]
                return EntityPage(page, encode_position(last.partition_key, last.row_key))
            page.append(Entity(pk, rk, copy.deepcopy(props)))

        return EntityPage(page, None)
