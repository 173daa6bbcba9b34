"""Progress derivation: replay an actor's statements into a progress record.

The statement stream is the source of truth.  A progress record is a
cached conclusion about it, recomputed from scratch on every derivation
so that deriving twice from the same statements gives the same answer
(concurrent derivations for one learner are therefore harmless: the
last upsert wins and both computed the same thing).

THE ALGORITHM
--------------
  1. Fetch the actor's statements (all candidate partitions, capped at
     ``max_statements``) and keep those whose object id is the course's
     root activity or a ``<root>/...`` sub-activity.
  2. Nothing left -> no data.  The caller keeps whatever record exists.
  3. startedAt = earliest initialized/launched statement, else the
     earliest statement.
  4. The latest completion-verb statement decides the terminal status:
     passed -> passed, failed -> failed (success=False), else completed.
     Its result.score becomes the 0-100 score.
  5. Active time = sum of gaps between consecutive statements, counting
     only gaps in (0, max_gap_seconds].  Longer gaps are the learner
     walking away.  A single statement counts as 1 second.
  6. Percent = 100 once completed/passed, otherwise
     min(95, count / expected_statements * 100).

The percent heuristic is an approximation: ``expected_statements`` is
one number for every course.  It is deliberately capped below 100 so
statement volume alone never claims a course is finished.

A derivation that carries a registration also refreshes that launch's
attempt row, derived the same way from only the statements with that
registration.  Attempts created by ``record_launch`` start as in_progress.
"""

from __future__ import annotations

import datetime
import json
import logging
import math
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from lrs.core.errors import LrsError, ValidationError
from lrs.core.metrics import PROGRESS_DERIVATION_DURATION, PROGRESS_DERIVATIONS
from lrs.core.timestamps import parse_timestamp, utc_now_iso
from lrs.models.actor import Actor
from lrs.models.progress import (
    TERMINAL_STATUSES,
    AttemptRecord,
    DerivedProgress,
    ProgressRecord,
)
from lrs.repos.attempt_repo import AttemptRepo
from lrs.repos.progress_repo import ProgressRepo
from lrs.services.cache import CacheService
from lrs.services.statement_store import MAX_LIMIT, StatementStore
from lrs.services.verb_registry import VerbRegistry

logger = logging.getLogger(__name__)

# Long enough to absorb dashboard refreshes, short enough that a missed
# invalidation heals within minutes.
PROGRESS_CACHE_TTL = 300

_PERCENT_CAP_BEFORE_COMPLETION = 95

_EARLIEST = datetime.datetime.min.replace(tzinfo=datetime.UTC)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _object_id(statement: Mapping[str, Any]) -> str:
    obj = statement.get("object")
    if isinstance(obj, Mapping) and isinstance(obj.get("id"), str):
        return obj["id"]
    return ""


def _verb_id(statement: Mapping[str, Any]) -> str:
    verb = statement.get("verb")
    if isinstance(verb, Mapping) and isinstance(verb.get("id"), str):
        return verb["id"]
    return ""


def _time_of(statement: Mapping[str, Any]) -> str | None:
    return statement.get("timestamp") or statement.get("stored")


def score_percent(statement: Mapping[str, Any]) -> float | None:
    """Normalize result.score to 0-100: scaled, then raw/max, then raw."""
    result = statement.get("result")
    score = result.get("score") if isinstance(result, Mapping) else None
    if not isinstance(score, Mapping):
        return None
    scaled = score.get("scaled")
    if _is_number(scaled):
        return round_half_up(scaled * 100)
    raw, maximum = score.get("raw"), score.get("max")
    if _is_number(raw) and _is_number(maximum) and maximum > 0:
        return round_half_up(raw / maximum * 100)
    if _is_number(raw):
        return raw
    return None


def active_seconds(statements: Iterable[Mapping[str, Any]], max_gap_seconds: int) -> int:
    """Sum of consecutive gaps in (0, max_gap_seconds]; a lone statement is 1."""
    items = list(statements)
    if len(items) == 1:
        return 1
    times = sorted(t for t in (parse_timestamp(_time_of(s)) for s in items) if t is not None)
    total = 0.0
    for earlier, later in zip(times, times[1:]):
        gap = (later - earlier).total_seconds()
        if 0 < gap <= max_gap_seconds:
            total += gap
    return round_half_up(total)


def derive_progress(
    statements: Iterable[Mapping[str, Any]],
    activity_id: str,
    registry: VerbRegistry,
    *,
    max_gap_seconds: int = 300,
    expected_statements: int = 80,
) -> DerivedProgress | None:
    child_prefix = activity_id + "/"
    matched = [
        s
        for s in statements
        if _object_id(s) == activity_id or _object_id(s).startswith(child_prefix)
    ]
    if not matched:
        return None

    # Unparseable timestamps sort last; ties keep arrival order
    keyed = [(parse_timestamp(_time_of(s)), i, s) for i, s in enumerate(matched)]
    keyed.sort(key=lambda k: (k[0] is None, k[0] or _EARLIEST, k[1]))
    ordered = [s for _, _, s in keyed]

    start = next((s for s in ordered if registry.is_session_start_verb(_verb_id(s))), ordered[0])

    completion = None
    for statement in reversed(ordered):
        if registry.is_completion_verb(_verb_id(statement)):
            completion = statement
            break

    status = "in_progress"
    score = None
    success = None
    completed_at = None
    if completion is not None:
        action = registry.classify(_verb_id(completion)).action
        if action == "mark_passed":
            status = "passed"
        elif action == "mark_failed":
            status = "failed"
        else:
            status = "completed"
        result = completion.get("result")
        reported = result.get("success") if isinstance(result, Mapping) else None
        if status == "failed":
            success = False
        else:
            success = reported if isinstance(reported, bool) else None
        score = score_percent(completion)
        completed_at = _time_of(completion)

    if status in ("completed", "passed"):
        percent = 100
    else:
        percent = min(
            _PERCENT_CAP_BEFORE_COMPLETION,
            round_half_up(len(matched) / max(1, expected_statements) * 100),
        )

    return DerivedProgress(
        completion_status=status,
        score=score,
        success=success,
        time_spent=active_seconds(matched, max_gap_seconds),
        progress_percent=percent,
        statement_count=len(matched),
        started_at=_time_of(start),
        completed_at=completed_at,
        completion_verb=_verb_id(completion) if completion is not None else None,
        completion_statement_id=completion.get("id") if completion is not None else None,
    )


def merge_progress(
    existing: ProgressRecord | None,
    derived: DerivedProgress,
    *,
    user_id: str,
    course_id: str,
    registration: str | None = None,
    now: str | None = None,
) -> ProgressRecord:
    """Fold a derivation into the stored record.

    ``attempts`` and ``enrolled_at`` are never touched here, and a
    terminal completion status is never replaced by a non-terminal one.
    """
    now = now or utc_now_iso()
    base = existing or ProgressRecord(user_id=user_id, course_id=course_id)

    if (
        derived.completion_status in TERMINAL_STATUSES
        or base.completion_status not in TERMINAL_STATUSES
    ):
        completion = {
            "completion_status": derived.completion_status,
            "score": derived.score if derived.completion_statement_id else base.score,
            "success": derived.success if derived.completion_statement_id else base.success,
            "progress_percent": derived.progress_percent,
            "completed_at": derived.completed_at,
            "completion_verb": derived.completion_verb,
            "completion_statement_id": derived.completion_statement_id,
        }
    else:
        completion = {
            "completion_status": base.completion_status,
            "score": base.score,
            "success": base.success,
            "progress_percent": max(base.progress_percent, derived.progress_percent),
            "completed_at": base.completed_at,
            "completion_verb": base.completion_verb,
            "completion_statement_id": base.completion_statement_id,
        }

    return replace(
        base,
        **completion,
        enrollment_status=_enrolled(base),
        enrolled_at=base.enrolled_at or derived.started_at or now,
        started_at=derived.started_at or base.started_at,
        time_spent=derived.time_spent,
        registration=registration or base.registration,
        last_accessed_at=now,
        updated_at=now,
    )


class ProgressEngine:
    def __init__(
        self,
        statements: StatementStore,
        registry: VerbRegistry,
        progress: ProgressRepo,
        *,
        attempts: AttemptRepo | None = None,
        cache: CacheService | None = None,
        max_statements: int = 5000,
        max_gap_seconds: int = 300,
        expected_statements: int = 80,
    ) -> None:
        self._statements = statements
        self._registry = registry
        self._progress = progress
        self._attempts = attempts
        self._cache = cache
        self._max_statements = max_statements
        self._max_gap_seconds = max_gap_seconds
        self._expected_statements = expected_statements

    async def collect(self, actor: Actor) -> list[dict]:
        """All of the actor's statements, up to ``max_statements``."""
        collected: list[dict] = []
        cursor: str | None = None
        while len(collected) < self._max_statements:
            page = await self._statements.query_by_actor(
                actor,
                limit=min(MAX_LIMIT, self._max_statements - len(collected)),
                cursor=cursor,
            )
            collected.extend(page.statements)
            if page.cursor is None:
                return collected
            cursor = page.cursor
        logger.info(
            "Statement history truncated at %d for actor=%s",
            self._max_statements,
            actor.identifier,
        )
        return collected

    def _derive(self, statements: list[dict], activity_id: str) -> DerivedProgress | None:
        return derive_progress(
            statements,
            activity_id,
            self._registry,
            max_gap_seconds=self._max_gap_seconds,
            expected_statements=self._expected_statements,
        )

    async def derive_and_upsert(
        self,
        actor: Actor,
        course_id: str,
        activity_id: str,
        registration: str | None = None,
    ) -> ProgressRecord | None:
        """Re-derive one (actor, course) and store it.  ``None`` means no data.

        ``registration`` is recorded on the row; derivation always looks
        at every registration since progress spans launches.  With a
        registration, that launch's attempt row is also re-derived from
        its own statements.
        """
        user_id = _user_id(actor)
        try:
            with PROGRESS_DERIVATION_DURATION.time():
                statements = await self.collect(actor)
                derived = self._derive(statements, activity_id)
                if derived is None:
                    PROGRESS_DERIVATIONS.labels(outcome="no_data").inc()
                    logger.debug("No statements for actor=%s course=%s", user_id, course_id)
                    return None
                existing = await self._progress.get(user_id, course_id)
                record = merge_progress(
                    existing,
                    derived,
                    user_id=user_id,
                    course_id=course_id,
                    registration=registration,
                )
                await self._progress.upsert(record)
        except Exception:
            PROGRESS_DERIVATIONS.labels(outcome="failed").inc()
            raise

        if registration:
            await self._record_attempt_progress(
                user_id, course_id, activity_id, registration, statements
            )
        await self._invalidate(user_id)
        PROGRESS_DERIVATIONS.labels(outcome="updated").inc()
        logger.info(
            "Progress derived actor=%s course=%s status=%s percent=%d statements=%d",
            user_id,
            course_id,
            record.completion_status,
            record.progress_percent,
            derived.statement_count,
        )
        return record

    async def record_launch(
        self, actor: Actor, course_id: str, activity_id: str | None = None
    ) -> tuple[ProgressRecord, str]:
        """Count a launch: the only thing that increments ``attempts``.

        Returns the updated record and a fresh registration id for the session,
        which also opens a new attempt row.
        """
        user_id = _user_id(actor)
        now = utc_now_iso()
        registration = str(uuid.uuid4())
        base = await self._progress.get(user_id, course_id) or ProgressRecord(
            user_id=user_id, course_id=course_id
        )
        record = replace(
            base,
            enrollment_status=_enrolled(base),
            completion_status=(
                "in_progress" if base.completion_status == "not_started" else base.completion_status
            ),
            attempts=base.attempts + 1,
            enrolled_at=base.enrolled_at or now,
            registration=registration,
            last_accessed_at=now,
            updated_at=now,
        )
        await self._progress.upsert(record)
        await self._invalidate(user_id)
        if self._attempts is not None:
            attempt = AttemptRecord(
                user_id=user_id,
                registration=registration,
                course_id=course_id,
                activity_id=activity_id,
                launched_at=now,
                updated_at=now,
            )
            try:
                await self._attempts.upsert(attempt)
            except LrsError:
                logger.exception(
                    "Failed to create attempt actor=%s registration=%s", user_id, registration
                )
        logger.info(
            "Launch recorded actor=%s course=%s attempt=%d", user_id, course_id, record.attempts
        )
        return record, registration

    async def get_progress(self, actor: Actor) -> list[ProgressRecord]:
        """All progress rows for an actor, through the read cache."""
        user_id = _user_id(actor)
        cache_key = f"progress:{user_id}"
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                return [ProgressRecord.from_dict(d) for d in json.loads(cached)]

        records = await self._progress.list_for_user(user_id)
        if self._cache is not None:
            await self._cache.set(
                cache_key,
                json.dumps([r.to_dict() for r in records]),
                PROGRESS_CACHE_TTL,
            )
        return records

    async def get_progress_record(self, actor: Actor, course_id: str) -> ProgressRecord | None:
        return await self._progress.get(_user_id(actor), course_id)

    async def get_course_progress(self, course_id: str) -> list[ProgressRecord]:
        return await self._progress.list_for_course(course_id)

    async def get_attempts(self, actor: Actor, course_id: str | None = None) -> list[AttemptRecord]:
        if self._attempts is None:
            return []
        return await self._attempts.list_for_user(_user_id(actor), course_id)

    async def _record_attempt_progress(
        self,
        user_id: str,
        course_id: str,
        activity_id: str,
        registration: str,
        statements: list[dict],
    ) -> None:
        """Re-derive one launch from the statements carrying its registration.

        The course row is already stored; a failure here is logged and
        left for the next derivation of the same registration.
        """
        if self._attempts is None:
            return
        session = [s for s in statements if _registration(s) == registration]
        derived = self._derive(session, activity_id)
        if derived is None:
            return
        try:
            existing = await self._attempts.get(user_id, registration)
            now = utc_now_iso()
            base = existing or AttemptRecord(
                user_id=user_id,
                registration=registration,
                course_id=course_id,
                launched_at=derived.started_at or now,
            )
            await self._attempts.upsert(
                replace(
                    base,
                    course_id=course_id,
                    activity_id=activity_id,
                    completion_status=derived.completion_status,
                    completion_verb=derived.completion_verb,
                    completion_statement_id=derived.completion_statement_id,
                    success=derived.success,
                    score=derived.score,
                    progress_percent=derived.progress_percent,
                    time_spent=derived.time_spent,
                    completed_at=derived.completed_at,
                    eligible_for_raise=(
                        derived.completion_status in ("completed", "passed")
                        and derived.success is not False
                    ),
                    updated_at=now,
                )
            )
        except LrsError:
            logger.exception(
                "Failed to update attempt actor=%s registration=%s", user_id, registration
            )

    async def _invalidate(self, user_id: str) -> None:
        if self._cache is not None:
            await self._cache.delete(f"progress:{user_id}")


def _enrolled(record: ProgressRecord) -> str:
    return "enrolled" if record.enrollment_status == "not_enrolled" else record.enrollment_status


def _registration(statement: Mapping[str, Any]) -> str | None:
    context = statement.get("context")
    return context.get("registration") if isinstance(context, Mapping) else None


def _user_id(actor: Actor) -> str:
    user_id = actor.identifier
    if not user_id:
        raise ValidationError("actor has no mailbox or account identifier")
    return user_id
