"""Scheduling progress re-derivation from statement ingestion.

Interaction-heavy content can emit a statement every few seconds.
Replaying a learner's whole history on each one would turn every click
into thousands of reads, so ingestion does not derive progress itself:

  append -> classify verb -> completion/progress verb for a known course?
         -> throttle check -> enqueue a "progress_sync" task
  worker -> dequeue -> ProgressEngine.derive_and_upsert

The throttle allows one derivation per (actor, course, registration) per
``min_interval_seconds``.  Completion verbs always go through: a learner
who just passed must not wait a minute to see it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from lrs.core.metrics import PROGRESS_DERIVATIONS, QUEUE_DEPTH
from lrs.models.actor import Actor
from lrs.repos.course_catalog import CourseCatalog
from lrs.services.task_queue import TaskQueue
from lrs.services.verb_registry import VerbRegistry

logger = logging.getLogger(__name__)

PROGRESS_SYNC_QUEUE = "progress_sync"


class SyncThrottle:
    """Per-process minimum interval between derivations of one key.

    The table is wiped once it holds more than ``max_keys`` entries; the
    worst case after a wipe is one extra derivation per active key.
    """

    def __init__(
        self,
        min_interval_seconds: int = 60,
        max_keys: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = min_interval_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._last_sync: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._last_sync)

    def clear(self) -> None:
        self._last_sync.clear()

    def should_sync(
        self,
        user_id: str,
        course_id: str,
        registration: str | None = None,
        *,
        bypass: bool = False,
    ) -> bool:
        if len(self._last_sync) > self._max_keys:
            self._last_sync.clear()

        key = f"{user_id}|{course_id}|{registration or 'none'}"
        now = self._clock()
        if bypass or self._min_interval <= 0:
            self._last_sync[key] = now
            return True

        last = self._last_sync.get(key)
        if last is None or now - last >= self._min_interval:
            self._last_sync[key] = now
            return True
        return False


class ProgressScheduler:
    """Post-append hook that turns statements into progress_sync tasks."""

    def __init__(
        self,
        registry: VerbRegistry,
        catalog: CourseCatalog,
        queue: TaskQueue,
        throttle: SyncThrottle,
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._queue = queue
        self._throttle = throttle

    async def on_statement(self, statement: Mapping[str, Any], actor: Actor) -> bool:
        """Enqueue a derivation if this statement warrants one.  Returns whether it did."""
        verb_id = (statement.get("verb") or {}).get("id")
        completion = self._registry.is_completion_verb(verb_id)
        if not completion and not self._registry.is_start_verb(verb_id):
            return False

        user_id = actor.identifier
        if not user_id:
            return False

        object_id = (statement.get("object") or {}).get("id") or ""
        course = await self._catalog.find_by_activity_id(object_id)
        if course is None:
            logger.debug("No course for activity=%s, skipping progress sync", object_id)
            return False

        context = statement.get("context")
        registration = context.get("registration") if isinstance(context, Mapping) else None

        if not self._throttle.should_sync(
            user_id,
            course.id,
            registration,
            bypass=completion,
        ):
            PROGRESS_DERIVATIONS.labels(outcome="throttled").inc()
            return False

        task = await self._queue.enqueue(
            PROGRESS_SYNC_QUEUE,
            {
                "actor": actor.to_dict(),
                "course_id": course.id,
                "activity_id": course.activity_id,
                "registration": registration,
            },
        )
        PROGRESS_DERIVATIONS.labels(outcome="scheduled").inc()
        QUEUE_DEPTH.labels(queue_name=PROGRESS_SYNC_QUEUE).set(
            await self._queue.queue_length(PROGRESS_SYNC_QUEUE)
        )
        logger.debug(
            "Progress sync queued task=%s actor=%s course=%s verb=%s",
            task.id,
            user_id,
            course.id,
            verb.get("id"),
        )
        return True
