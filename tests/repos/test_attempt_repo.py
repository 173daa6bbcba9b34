from __future__ import annotations

import asyncio

from lrs.core.retry import RetryPolicy
from lrs.models.progress import AttemptRecord
from lrs.repos.attempt_repo import AttemptRepo
from lrs.repos.table_repo import ATTEMPTS_TABLE, InMemoryTableRepo


_NO_RETRY = RetryPolicy(max_attempts=1, base_delay_ms=0, jitter_ms=0)


def _attempt(registration: str, course_id: str = "c1", **kwargs) -> AttemptRecord:
    return AttemptRecord(
        user_id="a@example.com", registration=registration, course_id=course_id, **kwargs
    )


def test_upsert_then_get() -> None:
    repo = AttemptRepo(InMemoryTableRepo(), _NO_RETRY)
    attempt = _attempt("r-1", launched_at="2024-05-01T09:00:00Z")
    asyncio.run(repo.upsert(attempt))
    assert asyncio.run(repo.get("a@example.com", "r-1")) == attempt
    assert asyncio.run(repo.get("a@example.com", "r-2")) is None
    assert asyncio.run(repo.get("b@example.com", "r-1")) is None


def test_rows_are_keyed_by_learner_and_registration() -> None:
    tables = InMemoryTableRepo()
    repo = AttemptRepo(tables, _NO_RETRY)
    asyncio.run(repo.upsert(_attempt("r-1")))
    asyncio.run(repo.upsert(_attempt("r-1", completion_status="passed")))

    entity = asyncio.run(tables.get(ATTEMPTS_TABLE, "a@example.com", "r-1"))
    assert entity is not None
    assert entity.properties["completion_status"] == "passed"


def test_list_for_user_filters_course_and_orders_by_launch() -> None:
    repo = AttemptRepo(InMemoryTableRepo(), _NO_RETRY)
    asyncio.run(repo.upsert(_attempt("r-b", launched_at="2024-05-02T09:00:00Z")))
    asyncio.run(repo.upsert(_attempt("r-a", launched_at="2024-05-03T09:00:00Z")))
    asyncio.run(repo.upsert(_attempt("r-c", "c2", launched_at="2024-05-01T09:00:00Z")))
    asyncio.run(
        repo.upsert(
            AttemptRecord(user_id="b@example.com", registration="r-z", course_id="c1")
        )
    )

    everything = asyncio.run(repo.list_for_user("a@example.com"))
    assert [a.registration for a in everything] == ["r-c", "r-b", "r-a"]

    course = asyncio.run(repo.list_for_user("a@example.com", "c1"))
    assert [a.registration for a in course] == ["r-b", "r-a"]
