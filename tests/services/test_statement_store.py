"""Statement store tests.

Verifies:
1. Appends are idempotent on statement id and fill id/timestamp/stored
2. Actor queries span the current AND legacy partitions, with a cursor
   that visits every statement exactly once whatever the page size
3. A failing candidate partition is skipped unless every one fails
4. getById is exact; the activity prefix scan stays inside the prefix
"""

from __future__ import annotations

import asyncio
import json

import pytest

from lrs.core.errors import StoreError, ValidationError
from lrs.core.retry import RetryPolicy
from lrs.models.actor import Actor
from lrs.repos.table_repo import STATEMENTS_TABLE, Entity, InMemoryTableRepo
from lrs.services.statement_store import StatementCursor, StatementStore
from lrs.services.verb_registry import ADL_VERBS, VerbRegistry, VerbStats
from tests.conftest import COURSE_ACTIVITY, FailingTableRepo, make_statement

_NO_RETRY = RetryPolicy(max_attempts=1, base_delay_ms=0, jitter_ms=0)
_PREFIX = "http://lms.example.com/statements/"
_ALICE = Actor.from_email("alice@example.com")


def _store(tables: InMemoryTableRepo | None = None) -> StatementStore:
    tables = tables if tables is not None else InMemoryTableRepo()
    registry = VerbRegistry(tables, _NO_RETRY)
    stats = VerbStats(tables, registry, retry=_NO_RETRY)
    return StatementStore(tables, registry, stats, retry=_NO_RETRY, id_prefix=_PREFIX)


async def _seed_legacy(
    tables: InMemoryTableRepo,
    count: int,
    email: str = "alice@example.com",
    verb: str = "experienced",
    tag: str = "old",
) -> None:
    """Rows written under the old local-part partition, statement as JSON text."""
    for i in range(count):
        statement = make_statement(email, verb, statement_id=f"{_PREFIX}{tag}-{i:02d}")
        await tables.upsert(
            STATEMENTS_TABLE,
            Entity(
                "alice",
                f"{tag}-{i:02d}",
                {
                    "statement": json.dumps(statement),
                    "statementId": statement["id"],
                    "verb": statement["verb"]["id"],
                    "object": COURSE_ACTIVITY,
                },
            ),
        )


async def _seed_current(store: StatementStore, count: int) -> None:
    for i in range(count):
        await store.append(
            make_statement("alice@example.com", "experienced", statement_id=f"{_PREFIX}s-{i:02d}")
        )


async def _page_through(store: StatementStore, limit: int) -> list[str]:
    ids: list[str] = []
    cursor: str | None = None
    for _ in range(100):
        page = await store.query_by_actor(_ALICE, limit=limit, cursor=cursor)
        assert len(page.statements) <= limit
        ids.extend(s["id"] for s in page.statements)
        if page.cursor is None:
            return ids
        cursor = page.cursor
    raise AssertionError("pagination did not terminate")


# ---- append ----


def test_append_fills_id_timestamp_and_stored() -> None:
    store = _store()
    statement_id = asyncio.run(store.append(make_statement("alice@example.com", "initialized")))
    assert statement_id.startswith(_PREFIX)

    stored = asyncio.run(store.get_by_id(statement_id))
    assert stored is not None
    assert stored["timestamp"].endswith("Z")
    assert stored["stored"] == stored["timestamp"]


def test_append_keeps_client_timestamp() -> None:
    store = _store()
    sid = asyncio.run(
        store.append(
            make_statement("alice@example.com", "initialized", timestamp="2024-01-01T10:00:00Z")
        )
    )
    stored = asyncio.run(store.get_by_id(sid))
    assert stored is not None
    assert stored["timestamp"] == "2024-01-01T10:00:00Z"


def test_append_same_id_twice_is_idempotent() -> None:
    store = _store()
    statement = make_statement("alice@example.com", "completed", statement_id=f"{_PREFIX}dup")
    asyncio.run(store.append(statement))
    asyncio.run(store.append(statement))
    page = asyncio.run(store.query_by_actor(_ALICE, limit=50))
    assert [s["id"] for s in page.statements] == [f"{_PREFIX}dup"]


def test_append_with_out_of_band_id() -> None:
    store = _store()
    sid = asyncio.run(store.append(make_statement("alice@example.com", "launched"), "urn:stmt:42"))
    assert sid == "urn:stmt:42"
    assert asyncio.run(store.get_by_id("urn:stmt:42")) is not None


def test_append_rejects_mismatched_id() -> None:
    store = _store()
    statement = make_statement("alice@example.com", "launched", statement_id="urn:a")
    with pytest.raises(ValidationError, match="does not match"):
        asyncio.run(store.append(statement, "urn:b"))


@pytest.mark.parametrize("missing", ["verb", "object"])
def test_append_requires_verb_and_object_ids(missing: str) -> None:
    store = _store()
    statement = make_statement("alice@example.com", "launched")
    statement[missing] = {}
    with pytest.raises(ValidationError, match=f"{missing}.id"):
        asyncio.run(store.append(statement))


def test_append_many_validates_before_writing() -> None:
    tables = InMemoryTableRepo()
    store = _store(tables)
    good = make_statement("alice@example.com", "launched")
    bad = {"actor": "not an object", "verb": {"id": "v"}, "object": {"id": "o"}}
    with pytest.raises(ValidationError):
        asyncio.run(store.append_many([good, bad]))
    assert tables._tables.get(STATEMENTS_TABLE, {}) == {}


def test_append_tracks_verb_usage() -> None:
    tables = InMemoryTableRepo()
    registry = VerbRegistry(tables, _NO_RETRY)
    stats = VerbStats(tables, registry, retry=_NO_RETRY)
    store = StatementStore(tables, registry, stats, retry=_NO_RETRY)
    asyncio.run(store.append(make_statement("alice@example.com", "answered")))
    usage = stats.get(f"{ADL_VERBS}answered", "alice@example.com", COURSE_ACTIVITY)
    assert usage is not None and usage.count == 1


def test_failing_listener_does_not_fail_append() -> None:
    store = _store()

    async def broken(statement: dict, actor: Actor) -> None:
        raise RuntimeError("queue down")

    store.add_listener(broken)
    sid = asyncio.run(store.append(make_statement("alice@example.com", "completed")))
    assert asyncio.run(store.get_by_id(sid)) is not None


def test_transient_upsert_failure_is_retried() -> None:
    tables = FailingTableRepo()
    tables.fail_upserts = 1
    registry = VerbRegistry(tables, _NO_RETRY)
    policy = RetryPolicy(max_attempts=3, base_delay_ms=0, jitter_ms=0)
    store = StatementStore(tables, registry, retry=policy)
    sid = asyncio.run(store.append(make_statement("alice@example.com", "launched")))
    assert tables.upsert_failures == 1
    assert asyncio.run(store.get_by_id(sid)) is not None


# ---- query_by_actor ----


def test_query_reads_current_then_legacy_partition() -> None:
    tables = InMemoryTableRepo()
    store = _store(tables)
    asyncio.run(_seed_current(store, 2))
    asyncio.run(_seed_legacy(tables, 2))

    page = asyncio.run(store.query_by_actor(_ALICE, limit=10))
    assert [s["id"] for s in page.statements] == [
        f"{_PREFIX}s-00",
        f"{_PREFIX}s-01",
        f"{_PREFIX}old-00",
        f"{_PREFIX}old-01",
    ]
    assert page.cursor is None
    assert page.more is False


@pytest.mark.parametrize("limit", [1, 2, 3, 5, 7, 12, 50])
def test_cursor_visits_every_statement_exactly_once(limit: int) -> None:
    tables = InMemoryTableRepo()
    store = _store(tables)
    asyncio.run(_seed_current(store, 7))
    asyncio.run(_seed_legacy(tables, 5))

    ids = asyncio.run(_page_through(store, limit))
    assert len(ids) == 12
    assert len(set(ids)) == 12


def test_offset_skips_across_partitions() -> None:
    tables = InMemoryTableRepo()
    store = _store(tables)
    asyncio.run(_seed_current(store, 3))
    asyncio.run(_seed_legacy(tables, 3))

    page = asyncio.run(store.query_by_actor(_ALICE, limit=2, offset=2))
    assert [s["id"] for s in page.statements] == [f"{_PREFIX}s-02", f"{_PREFIX}old-00"]
    assert page.cursor is not None


def test_query_filters_by_verb_and_registration() -> None:
    store = _store()
    asyncio.run(store.append(make_statement("alice@example.com", "initialized", registration="r1")))
    asyncio.run(store.append(make_statement("alice@example.com", "completed", registration="r1")))
    asyncio.run(store.append(make_statement("alice@example.com", "completed", registration="r2")))

    page = asyncio.run(
        store.query_by_actor(_ALICE, verb=f"{ADL_VERBS}completed", registration="r1")
    )
    assert len(page.statements) == 1
    assert page.statements[0]["context"]["registration"] == "r1"


def test_query_does_not_return_other_actors() -> None:
    store = _store()
    asyncio.run(store.append(make_statement("alice@other.org", "launched")))
    page = asyncio.run(store.query_by_actor(_ALICE))
    assert page.statements == []


def test_legacy_partition_drops_other_mailboxes_with_same_local_part() -> None:
    tables = InMemoryTableRepo()
    store = _store(tables)
    asyncio.run(_seed_current(store, 1))
    asyncio.run(_seed_legacy(tables, 2))
    asyncio.run(_seed_legacy(tables, 3, email="alice@other.org", verb="completed", tag="bob"))

    page = asyncio.run(store.query_by_actor(_ALICE, limit=10))
    assert [s["id"] for s in page.statements] == [
        f"{_PREFIX}s-00",
        f"{_PREFIX}old-00",
        f"{_PREFIX}old-01",
    ]
    assert all(s["actor"]["mbox"] == "mailto:alice@example.com" for s in page.statements)

    # Dropped rows do not count toward offset or limit
    skipped = asyncio.run(store.query_by_actor(_ALICE, limit=2, offset=1))
    assert [s["id"] for s in skipped.statements] == [f"{_PREFIX}old-00", f"{_PREFIX}old-01"]
    assert asyncio.run(_page_through(store, 1)) == [s["id"] for s in page.statements]


def test_failed_legacy_partition_is_skipped() -> None:
    tables = FailingTableRepo()
    store = _store(tables)
    asyncio.run(_seed_current(store, 2))
    tables.fail_partitions["alice"] = 503

    page = asyncio.run(store.query_by_actor(_ALICE, limit=10))
    assert len(page.statements) == 2
    assert tables.queries == ["alice@example.com", "alice"]


def test_all_partitions_failing_raises() -> None:
    tables = FailingTableRepo()
    store = _store(tables)
    tables.fail_partitions.update({"alice@example.com": None, "alice": 500})
    with pytest.raises(StoreError):
        asyncio.run(store.query_by_actor(_ALICE))


def test_malformed_cursor_is_rejected() -> None:
    store = _store()
    with pytest.raises(ValidationError, match="cursor"):
        asyncio.run(store.query_by_actor(_ALICE, cursor="!!not-a-cursor!!"))


def test_cursor_for_another_query_is_rejected() -> None:
    store = _store()
    stale = StatementCursor(5, None).encode()
    with pytest.raises(ValidationError, match="cursor"):
        asyncio.run(store.query_by_actor(_ALICE, cursor=stale))


def test_cursor_round_trips() -> None:
    cursor = StatementCursor(1, "tok")
    assert StatementCursor.decode(cursor.encode()) == cursor


# ---- get_by_id / prefix scan ----


def test_get_by_id_requires_exact_id() -> None:
    store = _store()
    for email, statement_id in (
        ("alice@example.com", "http://a.example/x/s-1"),
        ("bob@example.com", "http://b.example/y/s-1"),
    ):
        asyncio.run(store.append(make_statement(email, "launched"), statement_id))

    found = asyncio.run(store.get_by_id("http://b.example/y/s-1"))
    assert found is not None
    assert found["actor"]["mbox"] == "mailto:bob@example.com"
    assert asyncio.run(store.get_by_id("http://c.example/z/s-1")) is None
    assert asyncio.run(store.get_by_id("")) is None


def test_activity_prefix_scan_includes_children_only() -> None:
    store = _store()
    for object_id in (
        COURSE_ACTIVITY,
        f"{COURSE_ACTIVITY}/module-1",
        f"{COURSE_ACTIVITY}-extra",
        f"{COURSE_ACTIVITY}0",
        "http://lms.example.com/courses/202",
    ):
        asyncio.run(store.append(make_statement("alice@example.com", "experienced", object_id)))

    found = asyncio.run(store.query_by_activity_prefix(COURSE_ACTIVITY))
    assert sorted(s["object"]["id"] for s in found) == [
        COURSE_ACTIVITY,
        f"{COURSE_ACTIVITY}/module-1",
    ]


def test_activity_prefix_scan_respects_limit_and_registration() -> None:
    store = _store()
    for i in range(4):
        asyncio.run(
            store.append(
                make_statement(f"u{i}@example.com", "experienced", registration="r1")
            )
        )
    asyncio.run(store.append(make_statement("x@example.com", "experienced", registration="r2")))

    assert len(asyncio.run(store.query_by_activity_prefix(COURSE_ACTIVITY, limit=3))) == 3
    only_r2 = asyncio.run(store.query_by_activity_prefix(COURSE_ACTIVITY, registration="r2"))
    assert [s["actor"]["mbox"] for s in only_r2] == ["mailto:x@example.com"]


def test_activity_prefix_scan_requires_activity() -> None:
    with pytest.raises(ValidationError):
        asyncio.run(_store().query_by_activity_prefix(""))
