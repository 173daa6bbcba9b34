"""Background worker: runs progress derivation off the ingestion path.

RUN:  python -m lrs.worker

Same image as the API, different command:
  api:    uvicorn lrs.main:app --host 0.0.0.0 --port 8000
  worker: python -m lrs.worker

THE WORKER LOOP
----------------
  1. Poll every registered queue (round-robin)
  2. Dequeue one task
  3. Dispatch it to the registered handler
  4. Log success or failure, then move on

A failing task is logged and dropped.  Progress derivation is
replay-idempotent, so the next statement for the same learner and course
repairs whatever a failed task left behind.

Without Redis there is no separate worker process: ``lrs.main`` runs
``run_worker`` in the API process and ``drain`` at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from lrs.core.config import SETTINGS
from lrs.core.logging import request_id_var, setup_logging
from lrs.core.metrics import QUEUE_DEPTH
from lrs.services.lrs_service import LearningRecordService, learning_record_service
from lrs.services.progress_sync import PROGRESS_SYNC_QUEUE
from lrs.services.task_queue import InMemoryTaskQueue, Task, TaskQueue

TaskHandler = Callable[[LearningRecordService, dict], Coroutine[Any, Any, Any]]

logger = logging.getLogger("lrs.worker")

_IN_MEMORY_POLL_SECONDS = 0.2


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


@register_handler(PROGRESS_SYNC_QUEUE)
async def handle_progress_sync(service: LearningRecordService, payload: dict) -> None:
    record = await service.handle_progress_sync(payload)
    if record is None:
        logger.info("No statements yet for course=%s, progress unchanged", payload.get("course_id"))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def process_task(service: LearningRecordService, task: Task) -> bool:
    """Run one task.  Returns False when the handler raised."""
    handler = HANDLERS.get(task.queue)
    if handler is None:
        logger.warning("No handler for queue [%s], dropping task %s", task.queue, task.id)
        return False
    # Worker log lines carry the task id where API lines carry the request id
    token = request_id_var.set(task.id)
    extra = {"task_id": task.id, "queue": task.queue}
    try:
        await handler(service, task.payload)
    except Exception:
        # No dead-letter queue: log and move on to the next task
        logger.exception("Task %s on [%s] failed", task.id, task.queue, extra=extra)
        return False
    finally:
        request_id_var.reset(token)
    logger.debug("Task %s on [%s] completed", task.id, task.queue, extra=extra)
    return True


async def drain(service: LearningRecordService, queue: TaskQueue | None = None) -> int:
    """Process every task currently queued, without blocking.  Returns how many ran."""
    queue = queue or service.queue
    processed = 0
    for queue_name in HANDLERS:
        while True:
            task = await queue.dequeue(queue_name, timeout=0)
            if task is None:
                break
            await process_task(service, task)
            processed += 1
        QUEUE_DEPTH.labels(queue_name=queue_name).set(await queue.queue_length(queue_name))
    return processed


async def run_worker(
    service: LearningRecordService,
    stop: asyncio.Event | None = None,
    *,
    poll_timeout: int = 1,
) -> None:
    """Poll all registered queues and dispatch tasks until ``stop`` is set."""
    queues = list(HANDLERS.keys())
    logger.info("Worker started, listening on queues: %s", queues)

    while stop is None or not stop.is_set():
        idle = True
        for queue_name in queues:
            task = await service.queue.dequeue(queue_name, timeout=poll_timeout)
            if task is None:
                continue
            idle = False
            await process_task(service, task)
        if idle and isinstance(service.queue, InMemoryTaskQueue):
            # The in-memory queue never blocks; don't spin on it
            await asyncio.sleep(_IN_MEMORY_POLL_SECONDS)

    logger.info("Worker stopped")


async def _main() -> None:
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    await learning_record_service.start()
    await run_worker(learning_record_service)


if __name__ == "__main__":
    asyncio.run(_main())
