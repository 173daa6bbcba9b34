from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

ENROLLMENT_STATUSES = ("not_enrolled", "enrolled", "in_progress")
COMPLETION_STATUSES = ("not_started", "in_progress", "completed", "passed", "failed")

# Statuses that only an explicit completion-category verb can produce.
TERMINAL_STATUSES = frozenset({"completed", "passed", "failed"})


@dataclass(frozen=True, slots=True)
class DerivedProgress:
    """What one replay of an actor's statement stream says about a course."""

    completion_status: str
    score: float | None
    success: bool | None
    time_spent: int
    progress_percent: int
    statement_count: int
    started_at: str | None = None
    completed_at: str | None = None
    completion_verb: str | None = None
    completion_statement_id: str | None = None


@dataclass(frozen=True, slots=True)
class ProgressRecord:
    """Projection / read model, one row per (actor, course).

    The statement stream is the source of truth; this record caches what
    the last derivation concluded so reporting does not replay events.
    Timestamps are ISO-8601 strings, same as statement timestamps.
    """

    user_id: str
    course_id: str
    enrollment_status: str = "not_enrolled"
    completion_status: str = "not_started"
    score: float | None = None
    progress_percent: int = 0
    time_spent: int = 0  # seconds of active time
    attempts: int = 0
    success: bool | None = None
    completion_verb: str | None = None
    completion_statement_id: str | None = None
    registration: str | None = None
    enrolled_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    last_accessed_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ProgressRecord:
        known = {k: data[k] for k in ProgressRecord.__dataclass_fields__ if k in data}
        return ProgressRecord(**known)


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    """One launch of a course, keyed by its registration.

    The course-level ``ProgressRecord`` folds every launch together; this
    row keeps what each session on its own reached.
    """

    user_id: str
    registration: str
    course_id: str
    activity_id: str | None = None
    launched_at: str | None = None
    completion_status: str = "in_progress"
    completion_verb: str | None = None
    completion_statement_id: str | None = None
    success: bool | None = None
    score: float | None = None
    progress_percent: int | None = None
    time_spent: int = 0
    completed_at: str | None = None
    eligible_for_raise: bool | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> AttemptRecord:
        known = {k: data[k] for k in AttemptRecord.__dataclass_fields__ if k in data}
        return AttemptRecord(**known)
