"""Per-registration attempt rows in the CourseAttempts table.

Same partitioning as progress (the learner), with the launch's
registration id as row key, so a learner's session history is one
partition scan.
"""

from __future__ import annotations

from lrs.core.filters import Condition, build_filter
from lrs.core.keys import attempt_row_key, progress_partition_key
from lrs.core.retry import RetryPolicy
from lrs.models.progress import AttemptRecord
from lrs.repos.table_repo import ATTEMPTS_TABLE, Entity, TableRepo, iterate_entities


class AttemptRepo:
    def __init__(self, tables: TableRepo, retry: RetryPolicy | None = None) -> None:
        self._tables = tables
        self._retry = retry or RetryPolicy()

    async def get(self, user_id: str, registration: str) -> AttemptRecord | None:
        entity = await self._retry.run(
            lambda: self._tables.get(
                ATTEMPTS_TABLE,
                progress_partition_key(user_id),
                attempt_row_key(registration),
            )
        )
        if entity is None:
            return None
        return AttemptRecord.from_dict(entity.properties)

    async def upsert(self, record: AttemptRecord) -> None:
        entity = Entity(
            partition_key=progress_partition_key(record.user_id),
            row_key=attempt_row_key(record.registration),
            properties=record.to_dict(),
        )
        await self._retry.run(lambda: self._tables.upsert(ATTEMPTS_TABLE, entity))

    async def list_for_user(
        self, user_id: str, course_id: str | None = None
    ) -> list[AttemptRecord]:
        """Every attempt of one learner, optionally for one course, oldest launch first."""
        flt = build_filter([Condition("course_id", course_id)])
        attempts = [
            AttemptRecord.from_dict(e.properties)
            async for e in iterate_entities(
                self._tables,
                ATTEMPTS_TABLE,
                flt,
                partition_key=progress_partition_key(user_id),
            )
        ]
        return sorted(attempts, key=lambda a: a.launched_at or "")
