"""Statement store: append-only xAPI statements over partitioned tables.

PARTITIONING
-------------
A statement is written once, under the CURRENT-scheme partition key of
its actor, with the trailing segment of its id as row key.  Re-appending
the same id lands on the same (partition, row) and overwrites, which is
what makes a retried append idempotent.

Reads come in three shapes:

  query_by_actor            every candidate partition of the actor
                            (current scheme, then legacy), paginated
                            with a cursor that spans partitions
  get_by_id                 bounded cross-partition scan on RowKey
  query_by_activity_prefix  unbounded admin scan on the object id

CURSORS
--------
The store's own continuation token only makes sense within one scan.
Our cursor wraps it together with the index of the candidate partition
it belongs to (``StatementCursor``), base64 of compact JSON.  Decoding a
cursor we did not issue is a ValidationError, never a silent restart.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from functools import partial
from typing import Any

from lrs.core.errors import StoreError, ValidationError
from lrs.core.filters import Condition, build_filter
from lrs.core.keys import (
    statement_partition_key,
    statement_partition_keys,
    statement_row_key,
)
from lrs.core.metrics import STATEMENT_PARTITION_FAILURES, STATEMENTS_APPENDED
from lrs.core.retry import RetryPolicy
from lrs.core.timestamps import utc_now_iso
from lrs.models.actor import Actor
from lrs.repos.table_repo import STATEMENTS_TABLE, Entity, TableRepo
from lrs.services.verb_registry import VerbRegistry, VerbStats

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 1000

# getById is a cross-partition scan; cap how much of it one lookup may cost
GET_BY_ID_PAGE_SIZE = 100
GET_BY_ID_MAX_SCANNED = 1000

PREFIX_SCAN_PAGE_SIZE = 500

# Called after a successful append with the stored statement and its actor.
AppendListener = Callable[[dict, Actor], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class StatementCursor:
    """Where a paginated actor query stopped: candidate index + store token."""

    source_index: int
    inner_token: str | None = None

    def encode(self) -> str:
        raw = json.dumps([self.source_index, self.inner_token], separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @staticmethod
    def decode(token: str) -> StatementCursor:
        try:
            index, inner = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        except (ValueError, TypeError, binascii.Error):
            raise ValidationError("Malformed statement cursor") from None
        if (
            not isinstance(index, int)
            or isinstance(index, bool)
            or index < 0
            or not (inner is None or isinstance(inner, str))
        ):
            raise ValidationError("Malformed statement cursor")
        return StatementCursor(index, inner)


@dataclass(frozen=True, slots=True)
class StatementPage:
    statements: list[dict]
    cursor: str | None = None

    @property
    def more(self) -> bool:
        return self.cursor is not None


class StatementStore:
    def __init__(
        self,
        tables: TableRepo,
        registry: VerbRegistry,
        stats: VerbStats | None = None,
        *,
        retry: RetryPolicy | None = None,
        id_prefix: str = "http://lms.example.com/statements/",
    ) -> None:
        self._tables = tables
        self._registry = registry
        self._stats = stats
        self._retry = retry or RetryPolicy()
        self._id_prefix = id_prefix
        self._listeners: list[AppendListener] = []

    def add_listener(self, listener: AppendListener) -> None:
        self._listeners.append(listener)

    # -- writes -------------------------------------------------------------

    async def append(self, statement: Mapping[str, Any], statement_id: str | None = None) -> str:
        """Store one statement and return its id.

        ``statement_id`` is the id given out-of-band (PUT ?statementId=);
        it must agree with the body's id when both are present.
        """
        stored, actor = self._prepare(statement, statement_id)
        await self._write(stored, actor)
        return stored["id"]

    async def append_many(self, statements: list[Mapping[str, Any]]) -> list[str]:
        # Validate the whole batch first so a bad entry does not leave half of it written
        prepared = [self._prepare(s, None) for s in statements]
        for stored, actor in prepared:
            await self._write(stored, actor)
        return [stored["id"] for stored, _ in prepared]

    def _prepare(
        self, statement: Mapping[str, Any], statement_id: str | None
    ) -> tuple[dict, Actor]:
        if not isinstance(statement, Mapping):
            raise ValidationError("statement must be an object")
        actor = Actor.from_dict(statement.get("actor"))
        if not _nested_id(statement, "verb"):
            raise ValidationError("statement.verb.id is required")
        if not _nested_id(statement, "object"):
            raise ValidationError("statement.object.id is required")

        stored = copy.deepcopy(dict(statement))
        if statement_id:
            if stored.get("id") and stored["id"] != statement_id:
                raise ValidationError("statementId does not match statement.id")
            stored["id"] = statement_id
        if not stored.get("id"):
            stored["id"] = f"{self._id_prefix}{uuid.uuid4()}"

        now = utc_now_iso()
        if not stored.get("timestamp"):
            stored["timestamp"] = now
        if not stored.get("stored"):
            stored["stored"] = now
        return stored, actor

    async def _write(self, stored: dict, actor: Actor) -> None:
        verb_id = _nested_id(stored, "verb")
        object_id = _nested_id(stored, "object")
        context = stored.get("context")
        registration = context.get("registration") if isinstance(context, Mapping) else None

        entity = Entity(
            partition_key=statement_partition_key(actor),
            row_key=statement_row_key(stored["id"]),
            properties={
                "statement": stored,
                "statementId": stored["id"],
                "verb": verb_id,
                "object": object_id,
                "registration": registration,
            },
        )
        await self._retry.run(partial(self._tables.upsert, STATEMENTS_TABLE, entity))
        STATEMENTS_APPENDED.inc()
        logger.debug(
            "Statement stored id=%s partition=%s verb=%s",
            stored["id"],
            entity.partition_key,
            verb_id,
        )

        if self._stats is not None:
            await self._stats.track(verb_id, actor.identifier or "unknown", object_id)

        for listener in self._listeners:
            try:
                await listener(stored, actor)
            except Exception:
                # The statement is already durable; a follow-up failure must not undo that
                logger.exception("Post-append hook failed for statement %s", stored["id"])

    # -- reads --------------------------------------------------------------

    async def query_by_actor(
        self,
        actor: Actor | None,
        *,
        activity: str | None = None,
        verb: str | None = None,
        registration: str | None = None,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        cursor: str | None = None,
    ) -> StatementPage:
        """Page through an actor's statements across all candidate partitions.

        Without an actor the single source is a cross-partition scan.
        ``offset`` applies to a fresh query only; a cursor already
        encodes how far the previous page got.
        """
        flt = build_filter(
            [
                Condition("object", activity),
                Condition("verb", verb),
                Condition("registration", registration),
            ]
        )
        sources: list[str | None] = list(statement_partition_keys(actor)) if actor else [None]
        wanted = actor.identifier if actor else None
        limit = max(1, min(limit, MAX_LIMIT))

        if cursor:
            position = StatementCursor.decode(cursor)
            if position.source_index >= len(sources):
                raise ValidationError("Statement cursor does not match this query")
            index, token, skip = position.source_index, position.inner_token, 0
        else:
            index, token, skip = 0, None, max(0, offset)

        results: list[dict] = []
        scanned_any = False
        last_error: StoreError | None = None

        while index < len(sources):
            partition = sources[index]
            try:
                page = await self._retry.run(
                    partial(
                        self._tables.query,
                        STATEMENTS_TABLE,
                        flt,
                        partition_key=partition,
                        page_size=skip + (limit - len(results)),
                        continuation=token,
                    )
                )
            except StoreError as exc:
                # Legacy partitions are best effort; move on to the next candidate
                STATEMENT_PARTITION_FAILURES.inc()
                logger.warning("Statement scan failed for partition=%s: %s", partition, exc)
                last_error = exc
                index, token = index + 1, None
                continue

            scanned_any = True
            for entity in page.entities:
                statement = _statement_of(entity)
                # Legacy keys are shared by every mailbox with the same local part
                if index > 0 and _actor_identifier(statement) != wanted:
                    continue
                if skip:
                    skip -= 1
                    continue
                results.append(statement)

            if len(results) >= limit:
                if page.continuation:
                    next_cursor: StatementCursor | None = StatementCursor(index, page.continuation)
                elif index + 1 < len(sources):
                    next_cursor = StatementCursor(index + 1, None)
                else:
                    next_cursor = None
                return StatementPage(results, next_cursor.encode() if next_cursor else None)

            if page.continuation:
                token = page.continuation
            else:
                index, token = index + 1, None

        if not scanned_any and last_error is not None:
            raise last_error
        return StatementPage(results, None)

    async def get_by_id(self, statement_id: str) -> dict | None:
        if not statement_id:
            return None
        flt = build_filter([Condition("RowKey", statement_row_key(statement_id))])
        scanned = 0
        continuation: str | None = None
        while scanned < GET_BY_ID_MAX_SCANNED:
            page = await self._retry.run(
                partial(
                    self._tables.query,
                    STATEMENTS_TABLE,
                    flt,
                    page_size=GET_BY_ID_PAGE_SIZE,
                    continuation=continuation,
                )
            )
            for entity in page.entities:
                scanned += 1
                statement = _statement_of(entity)
                if statement.get("id") == statement_id:
                    return statement
            if page.continuation is None:
                break
            continuation = page.continuation
        return None

    async def query_by_activity_prefix(
        self,
        activity_id: str,
        *,
        limit: int = 100,
        registration: str | None = None,
    ) -> list[dict]:
        """Statements about ``activity_id`` or any ``activity_id/...`` sub-activity.

        Administrative use: scans every partition.
        """
        if not activity_id:
            raise ValidationError("activity id is required")
        # '0' sorts right after '/', so this range covers the id and all its children
        flt = build_filter(
            [
                Condition("object", activity_id, "ge"),
                Condition("object", activity_id + "0", "lt"),
                Condition("registration", registration),
            ]
        )
        child_prefix = activity_id + "/"
        results: list[dict] = []
        continuation: str | None = None
        while len(results) < limit:
            page = await self._retry.run(
                partial(
                    self._tables.query,
                    STATEMENTS_TABLE,
                    flt,
                    page_size=PREFIX_SCAN_PAGE_SIZE,
                    continuation=continuation,
                )
            )
            for entity in page.entities:
                object_id = entity.properties.get("object") or ""
                if object_id == activity_id or object_id.startswith(child_prefix):
                    results.append(_statement_of(entity))
                    if len(results) >= limit:
                        break
            if page.continuation is None:
                break
            continuation = page.continuation
        return results


def _nested_id(statement: Mapping[str, Any], field: str) -> str:
    value = statement.get(field)
    if isinstance(value, Mapping) and isinstance(value.get("id"), str):
        return value["id"].strip()
    return ""


def _statement_of(entity: Entity) -> dict:
    raw = entity.properties.get("statement")
    if isinstance(raw, str):
        # Rows written by older writers hold the statement as JSON text
        return json.loads(raw)
    return copy.deepcopy(raw) if isinstance(raw, dict) else {}


def _actor_identifier(statement: Mapping[str, Any]) -> str | None:
    try:
        return Actor.from_dict(statement.get("actor")).identifier
    except ValidationError:
        return None
