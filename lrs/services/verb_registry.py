"""Verb classification and usage statistics.

Every statement carries a verb URI.  What the verb MEANS for derived
progress comes from this registry:

  completion   completed / passed / failed: decides completion status
  progress     initialized / launched / experienced / progressed
  interaction  answered / interacted / downloaded / ...: tracked only

Lookup order for ``classify``:

  1. custom table   (operator-added, persisted in the verb table)
  2. built-in table (ADL vocabulary, fixed at construction)
  3. keyword match  ("complet", "pass", "fail", "init"/"launch"/"start",
                     "download") flagged ``is_detected``
  4. unknown        category "unknown", action "track_verb"

A custom entry with the same id as a built-in shadows it.

PERSISTENCE LAYOUT (VerbStatistics table)
-------------------------------------------
  partition "custom_verbs": row key = base64url(verb id)
  partition "verb_stats":   row key = enc(verb)|enc(user)|enc(activity)

Verb ids are URIs and the table forbids ``/`` in keys, hence the encoding.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from types import MappingProxyType
from typing import Any

from lrs.core.errors import LrsError, ValidationError, VerbNotFoundError
from lrs.core.keys import KEY_SEPARATOR, decode_key_segment, encode_key_segment
from lrs.core.metrics import UNKNOWN_VERBS
from lrs.core.retry import RetryPolicy
from lrs.core.timestamps import utc_now_iso
from lrs.models.verb import VerbConfig, VerbUsage
from lrs.repos.table_repo import VERBS_TABLE, Entity, TableRepo, iterate_entities

logger = logging.getLogger(__name__)

CUSTOM_VERBS_PARTITION = "custom_verbs"
VERB_STATS_PARTITION = "verb_stats"

ADL_VERBS = "http://adlnet.gov/expapi/verbs/"

STANDARD_VERBS: dict[str, VerbConfig] = {
    f"{ADL_VERBS}{name}": VerbConfig(category, action, description)
    for name, category, action, description in (
        ("completed", "completion", "mark_completed", "Learner completed the activity"),
        ("passed", "completion", "mark_passed", "Learner passed the activity"),
        ("failed", "completion", "mark_failed", "Learner failed the activity"),
        ("initialized", "progress", "mark_started", "Learner started the activity"),
        ("launched", "progress", "mark_launched", "Activity was launched"),
        ("experienced", "progress", "track_interaction", "Learner experienced content"),
        ("progressed", "progress", "update_progress", "Learner made progress"),
        ("interacted", "interaction", "track_interaction", "Learner interacted with content"),
        ("answered", "interaction", "track_answer", "Learner answered a question"),
        ("attempted", "interaction", "track_attempt", "Learner attempted the activity"),
        ("accessed", "interaction", "track_access", "Learner accessed content"),
        ("bookmarked", "interaction", "track_bookmark", "Learner bookmarked content"),
        ("shared", "interaction", "track_share", "Learner shared content"),
        ("downloaded", "interaction", "track_download", "Learner downloaded a resource"),
    )
}


def _detected(category: str, action: str, description: str) -> VerbConfig:
    return VerbConfig(category, action, description, is_detected=True)


# (keywords, config) checked in order against the lowercased verb id
_KEYWORD_RULES: tuple[tuple[tuple[str, ...], VerbConfig], ...] = (
    (("complet",), _detected("completion", "mark_completed", "Completion verb (detected)")),
    (("pass",), _detected("completion", "mark_passed", "Pass verb (detected)")),
    (("fail",), _detected("completion", "mark_failed", "Fail verb (detected)")),
    (("init", "launch", "start"), _detected("progress", "mark_started", "Start verb (detected)")),
    (("download",), _detected("interaction", "track_download", "Download verb (detected)")),
)

_START_ACTIONS = frozenset({"mark_started", "mark_launched"})
_COMPLETION_ACTIONS = frozenset({"mark_completed", "mark_passed", "mark_failed"})


class VerbRegistry:
    """Built-in and custom verb tables plus the classification rules.

    The built-in map is fixed at construction.  The custom map is loaded
    from the store by ``load()`` (call once at startup) and changed only
    through ``add``/``update``/``remove``, each of which writes to the
    store before touching memory so a failed write leaves no phantom entry.
    """

    def __init__(
        self,
        tables: TableRepo,
        retry: RetryPolicy | None = None,
        builtins: dict[str, VerbConfig] | None = None,
    ) -> None:
        self._tables = tables
        self._retry = retry or RetryPolicy()
        self._builtins = MappingProxyType(dict(builtins or STANDARD_VERBS))
        self._custom: dict[str, VerbConfig] = {}

    @property
    def builtins(self) -> MappingProxyType[str, VerbConfig]:
        return self._builtins

    @property
    def custom(self) -> dict[str, VerbConfig]:
        return dict(self._custom)

    async def load(self) -> int:
        """Replace the custom table with what the store holds.  Returns the count."""
        loaded: dict[str, VerbConfig] = {}
        async for entity in iterate_entities(
            self._tables, VERBS_TABLE, partition_key=CUSTOM_VERBS_PARTITION
        ):
            props = entity.properties
            verb_id = props.get("verbId") or decode_key_segment(entity.row_key)
            loaded[verb_id] = VerbConfig.from_dict(props, is_custom=True)
        self._custom = loaded
        logger.info("Loaded %d custom verbs", len(loaded))
        return len(loaded)

    # -- classification -----------------------------------------------------

    def classify(self, verb_id: str | None) -> VerbConfig:
        if not verb_id:
            return VerbConfig("unknown", "track_verb", "No verb ID provided", is_unknown=True)

        config = self._custom.get(verb_id) or self._builtins.get(verb_id)
        if config is not None:
            return config

        lowered = verb_id.lower()
        for keywords, detected in _KEYWORD_RULES:
            if any(k in lowered for k in keywords):
                return detected

        return VerbConfig("unknown", "track_verb", f"Unknown verb: {verb_id}", is_unknown=True)

    def is_completion_verb(self, verb_id: str | None) -> bool:
        config = self.classify(verb_id)
        return config.category == "completion" or config.action in _COMPLETION_ACTIONS

    def is_start_verb(self, verb_id: str | None) -> bool:
        """Start-like: an explicit start action or any progress-category verb."""
        config = self.classify(verb_id)
        return config.action in _START_ACTIONS or config.category == "progress"

    def is_session_start_verb(self, verb_id: str | None) -> bool:
        """Only the explicit start actions (``mark_started``, ``mark_launched``)."""
        return self.classify(verb_id).action in _START_ACTIONS

    # -- administration -----------------------------------------------------

    def get_custom(self, verb_id: str) -> VerbConfig | None:
        return self._custom.get(verb_id)

    async def add(self, verb_id: str, config: dict[str, Any]) -> VerbConfig:
        if not verb_id:
            raise ValidationError("verbId is required")
        if not config.get("category") or not config.get("action"):
            raise ValidationError("category and action are required")
        entry = VerbConfig.from_dict(config, is_custom=True)
        await self._persist(verb_id, entry)
        self._custom[verb_id] = entry
        logger.info("Added custom verb %s category=%s", verb_id, entry.category)
        return entry

    async def update(self, verb_id: str, changes: dict[str, Any]) -> VerbConfig:
        current = self._custom.get(verb_id)
        if current is None:
            raise VerbNotFoundError(verb_id)
        merged = {**current.to_dict(), **{k: v for k, v in changes.items() if v is not None}}
        entry = VerbConfig.from_dict(merged, is_custom=True)
        await self._persist(verb_id, entry)
        self._custom[verb_id] = entry
        logger.info("Updated custom verb %s", verb_id)
        return entry

    async def remove(self, verb_id: str) -> None:
        if verb_id not in self._custom:
            raise VerbNotFoundError(verb_id)
        await self._retry.run(
            lambda: self._tables.delete(
                VERBS_TABLE, CUSTOM_VERBS_PARTITION, encode_key_segment(verb_id)
            )
        )
        del self._custom[verb_id]
        logger.info("Removed custom verb %s", verb_id)

    async def _persist(self, verb_id: str, entry: VerbConfig) -> None:
        entity = Entity(
            partition_key=CUSTOM_VERBS_PARTITION,
            row_key=encode_key_segment(verb_id),
            properties={"verbId": verb_id, **entry.to_dict(), "isCustom": True},
        )
        await self._retry.run(lambda: self._tables.upsert(VERBS_TABLE, entity))


class VerbStats:
    """Per (verb, user, activity) usage counters.

    Held in a bounded LRU so a long-running process does not grow
    without limit: once the cap is exceeded the least recently used 10%
    are dropped from memory.  Evicted rows stay in the store; only the
    in-process summary forgets them until the next ``load()``.
    """

    def __init__(
        self,
        tables: TableRepo,
        registry: VerbRegistry,
        *,
        max_entries: int = 10_000,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._tables = tables
        self._registry = registry
        self._max_entries = max(1, max_entries)
        self._retry = retry or RetryPolicy()
        self._entries: OrderedDict[tuple[str, str, str], VerbUsage] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def get(self, verb_id: str, user_id: str, activity_id: str) -> VerbUsage | None:
        return self._entries.get((verb_id, user_id, activity_id))

    async def load(self) -> int:
        self._entries.clear()
        async for entity in iterate_entities(
            self._tables, VERBS_TABLE, partition_key=VERB_STATS_PARTITION
        ):
            props = entity.properties
            parts = entity.row_key.split(KEY_SEPARATOR)
            if len(parts) != 3:
                continue
            key = (
                props.get("verbId") or decode_key_segment(parts[0]),
                props.get("userId") or decode_key_segment(parts[1]),
                props.get("activityId") or decode_key_segment(parts[2]),
            )
            self._put(key, VerbUsage(int(props.get("count", 0)), props.get("lastUsed")))
        logger.info("Loaded %d verb statistics entries", len(self._entries))
        return len(self._entries)

    async def track(self, verb_id: str, user_id: str, activity_id: str) -> VerbUsage | None:
        """Count one use.  Persistence is best effort; failures are logged."""
        if not verb_id:
            return None
        key = (verb_id, user_id or "unknown", activity_id or "")
        previous = self._entries.get(key)
        usage = VerbUsage((previous.count if previous else 0) + 1, utc_now_iso())
        self._put(key, usage)

        config = self._registry.classify(verb_id)
        if config.is_unknown:
            UNKNOWN_VERBS.inc()
            logger.info("Unknown verb %s user=%s activity=%s", verb_id, key[1], key[2])
        elif config.is_custom:
            logger.info("Custom verb %s user=%s activity=%s", verb_id, key[1], key[2])

        entity = Entity(
            partition_key=VERB_STATS_PARTITION,
            row_key=KEY_SEPARATOR.join(encode_key_segment(k) for k in key),
            properties={
                "verbId": key[0],
                "userId": key[1],
                "activityId": key[2],
                "count": usage.count,
                "lastUsed": usage.last_used,
            },
        )
        try:
            await self._retry.run(lambda: self._tables.upsert(VERBS_TABLE, entity))
        except LrsError:
            logger.warning("Failed to persist verb stats for %s", verb_id, exc_info=True)
        return usage

    def summary(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        users: dict[str, set[str]] = {}
        activities: dict[str, set[str]] = {}
        for (verb_id, user_id, activity_id), usage in self._entries.items():
            stat = out.setdefault(
                verb_id, {"verbId": verb_id, "totalCount": 0, "lastUsed": None}
            )
            stat["totalCount"] += usage.count
            users.setdefault(verb_id, set()).add(user_id)
            activities.setdefault(verb_id, set()).add(activity_id)
            if usage.last_used and (stat["lastUsed"] is None or usage.last_used > stat["lastUsed"]):
                stat["lastUsed"] = usage.last_used
        for verb_id, stat in out.items():
            stat["uniqueUsers"] = len(users[verb_id])
            stat["uniqueActivities"] = len(activities[verb_id])
        return out

    def _put(self, key: tuple[str, str, str], usage: VerbUsage) -> None:
        self._entries[key] = usage
        self._entries.move_to_end(key)
        if len(self._entries) > self._max_entries:
            for _ in range(max(1, self._max_entries // 10)):
                self._entries.popitem(last=False)
