from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from lrs.core.errors import StoreError
from lrs.main import app
from lrs.models.course import Course
from lrs.repos.table_repo import DEFAULT_PAGE_SIZE, EntityPage, InMemoryTableRepo
from lrs.services.cache import cache_service
from lrs.services.lrs_service import learning_record_service
from lrs.services.task_queue import task_queue
from lrs.services.verb_registry import ADL_VERBS

# Ensure repo root is on sys.path so `import lrs` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

COURSE_ID = "course-101"
COURSE_ACTIVITY = "http://lms.example.com/courses/101"


@pytest.fixture(autouse=True)
def reset_tables() -> None:
    """Clear the in-memory entity tables between tests."""
    tables = learning_record_service.tables
    if hasattr(tables, "_tables"):
        tables._tables.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_verbs() -> None:
    """Forget custom verbs and usage counters between tests."""
    learning_record_service.verbs._custom.clear()
    learning_record_service.verb_stats.clear()


@pytest.fixture(autouse=True)
def reset_throttle() -> None:
    learning_record_service.throttle.clear()


@pytest.fixture(autouse=True)
def reset_catalog() -> None:
    """One known course, so statements about it schedule progress syncs."""
    catalog = learning_record_service.catalog
    if hasattr(catalog, "clear"):
        catalog.clear()  # type: ignore[union-attr]
        catalog.register(Course(COURSE_ID, COURSE_ACTIVITY, "Intro"))  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    """Clear cache between tests."""
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    """Clear task queues between tests."""
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def agent(email: str) -> dict[str, Any]:
    return {"objectType": "Agent", "mbox": f"mailto:{email}"}


def agent_param(email: str) -> str:
    """The ``agent`` query parameter as xAPI clients send it."""
    return json.dumps(agent(email))


def make_statement(
    email: str,
    verb: str,
    object_id: str = COURSE_ACTIVITY,
    *,
    timestamp: str | None = None,
    statement_id: str | None = None,
    registration: str | None = None,
    result: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """A minimal statement; ``verb`` may be a bare ADL verb name."""
    statement: dict[str, Any] = {
        "actor": agent(email),
        "verb": {"id": verb if ":" in verb else f"{ADL_VERBS}{verb}"},
        "object": {"id": object_id},
    }
    if timestamp:
        statement["timestamp"] = timestamp
    if statement_id:
        statement["id"] = statement_id
    if registration:
        statement["context"] = {"registration": registration}
    if result is not None:
        statement["result"] = result
    return statement


class FailingTableRepo(InMemoryTableRepo):
    """In-memory tables whose queries fail for chosen partitions.

    ``fail_partitions`` maps a partition key to the status code the
    StoreError carries (``None`` for a network-style failure).
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_partitions: dict[str, int | None] = {}
        self.fail_upserts: int | None = None
        self.upsert_failures = 0
        self.queries: list[str | None] = []

    async def upsert(self, table, entity) -> None:  # type: ignore[override]
        if self.fail_upserts is not None and self.upsert_failures < self.fail_upserts:
            self.upsert_failures += 1
            raise StoreError("upsert failed", status_code=503)
        await super().upsert(table, entity)

    async def query(  # type: ignore[override]
        self,
        table: str,
        filter: str = "",
        *,
        partition_key: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        continuation: str | None = None,
    ) -> EntityPage:
        self.queries.append(partition_key)
        if partition_key in self.fail_partitions:
            raise StoreError(
                f"partition {partition_key} unavailable",
                status_code=self.fail_partitions[partition_key],
            )
        return await super().query(
            table,
            filter,
            partition_key=partition_key,
            page_size=page_size,
            continuation=continuation,
        )
