"""Resumable state: small opaque blobs per (activity, actor, state name).

THE RESUME PROBLEM
-------------------
Course players ask for their "resume" state with the registration of
the CURRENT launch.  Registrations are minted fresh on every launch, so
a lookup keyed strictly by registration would never find what the
previous session saved and every learner would restart from slide one.

For the reserved names ``resume`` and ``bookmark`` we therefore keep
two records:

  durable  row key = "<name>"                 written on every save
  session  row key = "<name>|<registration>"  written when a registration is given

and ``get`` reads durable first, session second.  Other state names are
one record per (name, registration) and are read exactly.

Payloads are never parsed.  Strings are stored as-is, bytes as base64
with an ``encoding`` marker so they come back as bytes.
"""

from __future__ import annotations

import base64
import logging
from functools import partial

from lrs.core.keys import state_partition_key, state_row_key
from lrs.core.metrics import STATE_OPERATIONS
from lrs.core.retry import RetryPolicy
from lrs.models.actor import Actor
from lrs.repos.table_repo import STATE_TABLE, Entity, TableRepo

logger = logging.getLogger(__name__)

RESERVED_STATE_NAMES = frozenset({"resume", "bookmark"})

Payload = str | bytes


class StateStore:
    def __init__(self, tables: TableRepo, retry: RetryPolicy | None = None) -> None:
        self._tables = tables
        self._retry = retry or RetryPolicy()

    async def save(
        self,
        activity_id: str,
        actor: Actor,
        state_id: str,
        payload: Payload,
        registration: str | None = None,
    ) -> None:
        partition = state_partition_key(activity_id, actor)
        properties = _encode_payload(payload)

        if state_id in RESERVED_STATE_NAMES:
            await self._put(partition, state_row_key(state_id), properties)
            if registration:
                await self._put(partition, state_row_key(state_id, registration), properties)
        else:
            await self._put(partition, state_row_key(state_id, registration), properties)

        STATE_OPERATIONS.labels(operation="save", result="ok").inc()
        logger.debug(
            "State saved partition=%s state=%s registration=%s",
            partition,
            state_id,
            registration or "none",
        )

    async def get(
        self,
        activity_id: str,
        actor: Actor,
        state_id: str,
        registration: str | None = None,
    ) -> Payload | None:
        partition = state_partition_key(activity_id, actor)

        if state_id in RESERVED_STATE_NAMES:
            row_keys = [state_row_key(state_id)]
            if registration:
                row_keys.append(state_row_key(state_id, registration))
        else:
            row_keys = [state_row_key(state_id, registration)]

        for row_key in row_keys:
            entity = await self._retry.run(
                partial(self._tables.get, STATE_TABLE, partition, row_key)
            )
            if entity is not None and "state" in entity.properties:
                STATE_OPERATIONS.labels(operation="get", result="hit").inc()
                return _decode_payload(entity.properties)

        STATE_OPERATIONS.labels(operation="get", result="miss").inc()
        return None

    async def delete(
        self,
        activity_id: str,
        actor: Actor,
        state_id: str,
        registration: str | None = None,
    ) -> bool:
        """Delete the exact record.  Returns whether anything was there."""
        partition = state_partition_key(activity_id, actor)
        deleted = await self._retry.run(
            partial(
                self._tables.delete,
                STATE_TABLE,
                partition,
                state_row_key(state_id, registration),
            )
        )
        STATE_OPERATIONS.labels(operation="delete", result="ok").inc()
        return deleted

    async def _put(self, partition: str, row_key: str, properties: dict) -> None:
        entity = Entity(partition, row_key, properties)
        await self._retry.run(partial(self._tables.upsert, STATE_TABLE, entity))


def _encode_payload(payload: Payload) -> dict:
    if isinstance(payload, bytes | bytearray):
        return {"state": base64.b64encode(bytes(payload)).decode("ascii"), "encoding": "base64"}
    return {"state": payload, "encoding": "utf-8"}


def _decode_payload(properties: dict) -> Payload:
    state = properties["state"]
    if properties.get("encoding") == "base64":
        return base64.b64decode(state)
    return state
