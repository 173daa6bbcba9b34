"""Background task queue for progress re-derivation.

Deriving progress replays a learner's statement history, which is too
slow to do inline with every statement POST.  Ingestion ENQUEUES a
small task instead and returns; a worker DEQUEUES and derives.

  Producer (statement append):  LPUSH tasks:<queue> <json>
  Consumer (worker):            BRPOP tasks:<queue>

LPUSH at the head, BRPOP at the tail: FIFO.  BRPOP blocks inside Redis
until a task arrives, so an idle worker costs nothing.

Delivery is AT-MOST-ONCE: a worker that dies mid-task loses it.  For
progress that is acceptable.  The next statement for the same learner
and course re-derives from the full history anyway, so a lost task only
delays the update; it never corrupts it.

Without REDIS_URL the in-memory queue is used and the API process runs
the worker loop itself (see ``lrs.main``).
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from lrs.db.redis import redis_pool


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of background work.

    id:      Unique identifier, for logs.
    queue:   Queue name ("progress_sync").
    payload: JSON-serializable arguments for the handler.
    """

    id: str
    queue: str
    payload: dict


@runtime_checkable
class TaskQueue(Protocol):
    async def enqueue(self, queue: str, payload: dict) -> Task: ...
    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...
    async def queue_length(self, queue: str) -> int: ...


class InMemoryTaskQueue:
    """In-memory task queue for tests and single-process dev."""

    def __init__(self) -> None:
        self._queues: dict[str, list[Task]] = {}

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        self._queues.setdefault(queue, []).append(task)
        return task

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        tasks = self._queues.get(queue, [])
        if tasks:
            return tasks.pop(0)
        return None

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, []))


class RedisTaskQueue:
    """Redis-backed task queue using LPUSH/BRPOP."""

    _PREFIX = "tasks:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(id=str(uuid.uuid4()), queue=queue, payload=payload)
        task_json = json.dumps({"id": task.id, "queue": task.queue, "payload": task.payload})
        await self._redis.lpush(f"{self._PREFIX}{queue}", task_json)
        return task

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        # timeout=0 would block forever in BRPOP; treat it as a non-blocking poll
        if timeout <= 0:
            task_json = await self._redis.rpop(f"{self._PREFIX}{queue}")
        else:
            result = await self._redis.brpop(f"{self._PREFIX}{queue}", timeout=timeout)
            task_json = result[1] if result is not None else None
        if task_json is None:
            return None
        return Task(**json.loads(task_json))

    async def queue_length(self, queue: str) -> int:
        return await self._redis.llen(f"{self._PREFIX}{queue}")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    task_queue: TaskQueue = RedisTaskQueue(redis_pool)
else:
    task_queue = InMemoryTaskQueue()
