"""Progress records stored in the UserProgress table.

Partition key is the learner's identifier, row key the course id, so
"all courses for one learner" is a single-partition scan and "all
learners in one course" is a cross-partition scan filtered on RowKey.
"""

from __future__ import annotations

from lrs.core.filters import Condition, build_filter
from lrs.core.keys import progress_partition_key, progress_row_key
from lrs.core.retry import RetryPolicy
from lrs.models.progress import ProgressRecord
from lrs.repos.table_repo import PROGRESS_TABLE, Entity, TableRepo, iterate_entities


class ProgressRepo:
    def __init__(self, tables: TableRepo, retry: RetryPolicy | None = None) -> None:
        self._tables = tables
        self._retry = retry or RetryPolicy()

    async def get(self, user_id: str, course_id: str) -> ProgressRecord | None:
        entity = await self._retry.run(
            lambda: self._tables.get(
                PROGRESS_TABLE,
                progress_partition_key(user_id),
                progress_row_key(course_id),
            )
        )
        if entity is None:
            return None
        return ProgressRecord.from_dict(entity.properties)

    async def upsert(self, record: ProgressRecord) -> None:
        entity = Entity(
            partition_key=progress_partition_key(record.user_id),
            row_key=progress_row_key(record.course_id),
            properties=record.to_dict(),
        )
        await self._retry.run(lambda: self._tables.upsert(PROGRESS_TABLE, entity))

    async def list_for_user(self, user_id: str) -> list[ProgressRecord]:
        return [
            ProgressRecord.from_dict(e.properties)
            async for e in iterate_entities(
                self._tables,
                PROGRESS_TABLE,
                partition_key=progress_partition_key(user_id),
            )
        ]

    async def list_for_course(self, course_id: str) -> list[ProgressRecord]:
        flt = build_filter([Condition("RowKey", progress_row_key(course_id))])
        return [
            ProgressRecord.from_dict(e.properties)
            async for e in iterate_entities(self._tables, PROGRESS_TABLE, flt)
        ]
