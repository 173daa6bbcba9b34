"""LearningRecordService: the operations the HTTP layer and worker call.

Wires one set of collaborators together:

  TableRepo ─┬─ VerbRegistry ── VerbStats
             ├─ StatementStore ──(post-append)── ProgressScheduler ── TaskQueue
             ├─ StateStore
             ├─ ProgressRepo ─┬─ ProgressEngine ── CacheService
             └─ AttemptRepo ──┘

``build_service()`` picks PostgreSQL or in-memory tables the same way
the db/redis modules pick their backends: from configuration, at import.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from lrs.core.config import SETTINGS, Settings
from lrs.core.errors import LrsError, ValidationError
from lrs.core.retry import RetryPolicy
from lrs.db.engine import async_session_factory
from lrs.models.actor import Actor
from lrs.models.progress import AttemptRecord, ProgressRecord
from lrs.models.verb import VerbConfig
from lrs.repos.attempt_repo import AttemptRepo
from lrs.repos.course_catalog import CourseCatalog, InMemoryCourseCatalog
from lrs.repos.progress_repo import ProgressRepo
from lrs.repos.table_repo import InMemoryTableRepo, TableRepo
from lrs.services.cache import CacheService, cache_service
from lrs.services.progress_engine import ProgressEngine
from lrs.services.progress_sync import ProgressScheduler, SyncThrottle
from lrs.services.state_store import Payload, StateStore
from lrs.services.statement_store import DEFAULT_LIMIT, StatementPage, StatementStore
from lrs.services.task_queue import TaskQueue, task_queue
from lrs.services.verb_registry import VerbRegistry, VerbStats

logger = logging.getLogger(__name__)

AgentLike = Actor | Mapping[str, Any] | str


def as_actor(agent: AgentLike) -> Actor:
    if isinstance(agent, Actor):
        return agent
    return Actor.from_dict(agent)


class LearningRecordService:
    def __init__(
        self,
        tables: TableRepo,
        catalog: CourseCatalog,
        queue: TaskQueue,
        *,
        cache: CacheService | None = None,
        settings: Settings = SETTINGS,
        retry: RetryPolicy | None = None,
    ) -> None:
        retry = retry or RetryPolicy(
            max_attempts=settings.store_retry_attempts,
            base_delay_ms=settings.store_retry_base_delay_ms,
        )
        self.tables = tables
        self.catalog = catalog
        self.queue = queue
        self.verbs = VerbRegistry(tables, retry)
        self.verb_stats = VerbStats(
            tables, self.verbs, max_entries=settings.verb_stats_max_entries, retry=retry
        )
        self.statements = StatementStore(
            tables,
            self.verbs,
            self.verb_stats,
            retry=retry,
            id_prefix=settings.statement_id_prefix,
        )
        self.state = StateStore(tables, retry)
        self.progress = ProgressRepo(tables, retry)
        self.attempts = AttemptRepo(tables, retry)
        self.engine = ProgressEngine(
            self.statements,
            self.verbs,
            self.progress,
            attempts=self.attempts,
            cache=cache,
            max_statements=settings.progress_max_statements,
            max_gap_seconds=settings.progress_max_gap_seconds,
            expected_statements=settings.progress_expected_statements,
        )
        self.throttle = SyncThrottle(
            settings.progress_sync_min_interval_seconds,
            settings.progress_sync_max_keys,
        )
        self.scheduler = ProgressScheduler(self.verbs, catalog, queue, self.throttle)
        self.statements.add_listener(self.scheduler.on_statement)

    async def start(self) -> None:
        """Reload custom verbs and verb statistics from the store."""
        try:
            await self.verbs.load()
            await self.verb_stats.load()
        except LrsError:
            # Built-in verbs still classify; custom entries come back on the next start
            logger.exception("Failed to load verb tables, continuing with built-ins")

    # -- statements -----------------------------------------------------------

    async def append_statement(
        self, statement: Mapping[str, Any], statement_id: str | None = None
    ) -> str:
        return await self.statements.append(statement, statement_id)

    async def append_statements(self, statements: list[Mapping[str, Any]]) -> list[str]:
        return await self.statements.append_many(statements)

    async def query_statements(
        self,
        *,
        agent: AgentLike | None = None,
        activity: str | None = None,
        verb: str | None = None,
        registration: str | None = None,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        cursor: str | None = None,
    ) -> StatementPage:
        return await self.statements.query_by_actor(
            as_actor(agent) if agent is not None else None,
            activity=activity,
            verb=verb,
            registration=registration,
            limit=limit,
            offset=offset,
            cursor=cursor,
        )

    async def get_statement(self, statement_id: str) -> dict | None:
        return await self.statements.get_by_id(statement_id)

    async def query_statements_by_activity(
        self, activity_id: str, *, limit: int = 100, registration: str | None = None
    ) -> list[dict]:
        return await self.statements.query_by_activity_prefix(
            activity_id, limit=limit, registration=registration
        )

    # -- state ----------------------------------------------------------------

    async def get_state(
        self, activity_id: str, agent: AgentLike, state_id: str, registration: str | None = None
    ) -> Payload | None:
        return await self.state.get(activity_id, as_actor(agent), state_id, registration)

    async def save_state(
        self,
        activity_id: str,
        agent: AgentLike,
        state_id: str,
        payload: Payload,
        registration: str | None = None,
    ) -> None:
        await self.state.save(activity_id, as_actor(agent), state_id, payload, registration)

    async def delete_state(
        self, activity_id: str, agent: AgentLike, state_id: str, registration: str | None = None
    ) -> bool:
        return await self.state.delete(activity_id, as_actor(agent), state_id, registration)

    # -- progress -------------------------------------------------------------

    async def derive_and_upsert_progress(
        self,
        agent: AgentLike,
        course_id: str,
        activity_id: str | None = None,
        registration: str | None = None,
    ) -> ProgressRecord | None:
        if activity_id is None:
            course = await self.catalog.get(course_id)
            if course is None:
                raise ValidationError(f"Unknown course {course_id!r}")
            activity_id = course.activity_id
        return await self.engine.derive_and_upsert(
            as_actor(agent), course_id, activity_id, registration
        )

    async def handle_progress_sync(self, payload: dict) -> ProgressRecord | None:
        """Worker entry point for one progress_sync task."""
        return await self.derive_and_upsert_progress(
            payload["actor"],
            payload["course_id"],
            payload.get("activity_id"),
            payload.get("registration"),
        )

    async def record_launch(self, agent: AgentLike, course_id: str) -> tuple[ProgressRecord, str]:
        course = await self.catalog.get(course_id)
        if course is None:
            raise ValidationError(f"Unknown course {course_id!r}")
        return await self.engine.record_launch(as_actor(agent), course_id, course.activity_id)

    async def get_progress(self, agent: AgentLike) -> list[ProgressRecord]:
        return await self.engine.get_progress(as_actor(agent))

    async def get_progress_record(self, agent: AgentLike, course_id: str) -> ProgressRecord | None:
        return await self.engine.get_progress_record(as_actor(agent), course_id)

    async def get_course_progress(self, course_id: str) -> list[ProgressRecord]:
        return await self.engine.get_course_progress(course_id)

    async def get_attempts(
        self, agent: AgentLike, course_id: str | None = None
    ) -> list[AttemptRecord]:
        return await self.engine.get_attempts(as_actor(agent), course_id)

    # -- verbs ----------------------------------------------------------------

    def classify_verb(self, verb_id: str | None) -> VerbConfig:
        return self.verbs.classify(verb_id)

    def list_verbs(self) -> dict[str, Any]:
        return {
            "standard": {k: v.to_dict() for k, v in self.verbs.builtins.items()},
            "custom": {k: v.to_dict() for k, v in self.verbs.custom.items()},
            "stats": self.verb_stats.summary(),
        }

    def get_custom_verb(self, verb_id: str) -> VerbConfig | None:
        return self.verbs.get_custom(verb_id)

    async def add_custom_verb(self, verb_id: str, config: dict[str, Any]) -> VerbConfig:
        return await self.verbs.add(verb_id, config)

    async def update_custom_verb(self, verb_id: str, changes: dict[str, Any]) -> VerbConfig:
        return await self.verbs.update(verb_id, changes)

    async def remove_custom_verb(self, verb_id: str) -> None:
        await self.verbs.remove(verb_id)


def _default_catalog(settings: Settings) -> CourseCatalog:
    if settings.course_catalog_file:
        catalog = InMemoryCourseCatalog.from_file(settings.course_catalog_file)
        logger.info("Loaded course catalog from %s", settings.course_catalog_file)
        return catalog
    return InMemoryCourseCatalog()


def build_service(
    settings: Settings = SETTINGS,
    *,
    tables: TableRepo | None = None,
    catalog: CourseCatalog | None = None,
    queue: TaskQueue | None = None,
    cache: CacheService | None = None,
    retry: RetryPolicy | None = None,
) -> LearningRecordService:
    if tables is None:
        if async_session_factory is not None:
            from lrs.repos.pg_table_repo import PgTableRepo

            tables = PgTableRepo(async_session_factory)
        else:
            tables = InMemoryTableRepo()
    return LearningRecordService(
        tables,
        catalog if catalog is not None else _default_catalog(settings),
        queue if queue is not None else task_queue,
        cache=cache if cache is not None else cache_service,
        settings=settings,
        retry=retry,
    )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

learning_record_service = build_service()
