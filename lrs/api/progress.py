"""Course progress endpoints.

  POST /v1/progress/launch            learner opened a course
  GET  /v1/progress?agent=            all courses for one learner (cached)
  GET  /v1/progress/record            one learner + course
  GET  /v1/progress/attempts          one learner's launches, per registration
  GET  /v1/progress/courses/{id}      every learner in a course
  POST /v1/progress/sync              re-derive now, without the queue

The statement stream is the source of truth.  The summary read goes
through the cache and the cache entry is dropped whenever a derivation
writes a new record, so the next read sees the update.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from lrs.api.dependencies import AgentDep, ServiceDep
from lrs.models.progress import AttemptRecord, ProgressRecord

router = APIRouter(prefix="/v1/progress", tags=["progress"])


class LaunchIn(BaseModel):
    agent: dict[str, Any]
    course_id: str


class SyncIn(BaseModel):
    agent: dict[str, Any]
    course_id: str
    activity_id: str | None = None
    registration: str | None = None


class ProgressOut(BaseModel):
    user_id: str
    course_id: str
    enrollment_status: str
    completion_status: str
    score: float | None = None
    progress_percent: int = 0
    time_spent: int = 0
    attempts: int = 0
    success: bool | None = None
    completion_verb: str | None = None
    registration: str | None = None
    enrolled_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    last_accessed_at: str | None = None

    @staticmethod
    def of(record: ProgressRecord) -> ProgressOut:
        return ProgressOut.model_validate(record.to_dict())


class AttemptOut(BaseModel):
    registration: str
    course_id: str
    activity_id: str | None = None
    launched_at: str | None = None
    completion_status: str
    completion_verb: str | None = None
    success: bool | None = None
    score: float | None = None
    progress_percent: int | None = None
    time_spent: int = 0
    completed_at: str | None = None
    eligible_for_raise: bool | None = None

    @staticmethod
    def of(record: AttemptRecord) -> AttemptOut:
        return AttemptOut.model_validate(record.to_dict())


class LaunchOut(BaseModel):
    registration: str
    progress: ProgressOut


@router.post("/launch", response_model=LaunchOut)
async def launch(body: LaunchIn, service: ServiceDep) -> LaunchOut:
    record, registration = await service.record_launch(body.agent, body.course_id)
    return LaunchOut(registration=registration, progress=ProgressOut.of(record))


@router.get("", response_model=list[ProgressOut])
async def get_progress(actor: AgentDep, service: ServiceDep) -> list[ProgressOut]:
    return [ProgressOut.of(r) for r in await service.get_progress(actor)]


@router.get("/record", response_model=ProgressOut)
async def get_progress_record(
    actor: AgentDep,
    service: ServiceDep,
    course_id: Annotated[str, Query()],
) -> ProgressOut:
    record = await service.get_progress_record(actor, course_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No progress for this course",
        )
    return ProgressOut.of(record)


@router.get("/attempts", response_model=list[AttemptOut])
async def get_attempts(
    actor: AgentDep,
    service: ServiceDep,
    course_id: Annotated[str | None, Query()] = None,
) -> list[AttemptOut]:
    return [AttemptOut.of(a) for a in await service.get_attempts(actor, course_id)]


@router.get("/courses/{course_id}", response_model=list[ProgressOut])
async def get_course_progress(course_id: str, service: ServiceDep) -> list[ProgressOut]:
    return [ProgressOut.of(r) for r in await service.get_course_progress(course_id)]


@router.post("/sync", response_model=ProgressOut | None)
async def sync_progress(body: SyncIn, service: ServiceDep) -> ProgressOut | None:
    """Derive and store progress immediately.

    Returns null when the learner has no statements for the course.
    """
    record = await service.derive_and_upsert_progress(
        body.agent, body.course_id, body.activity_id, body.registration
    )
    return ProgressOut.of(record) if record is not None else None
