"""Partition and sort key derivation.

The storage collaborator addresses every record by (partition key, sort
key).  Keys cannot contain ``\\ / # ?`` or control characters, so every
fragment that comes from caller data goes through ``sanitize_key``.

Nothing in this module raises: an actor we cannot resolve lands in the
``unknown`` partition instead of failing the write.

STATEMENT KEY MIGRATION
-------------------------
Statements were originally partitioned by the mailbox local part only
(``alice`` for ``alice@x.com``).  That collides across domains, so the
current scheme uses the full normalized identifier.  Rows written under
the old scheme were never moved, which is why a statement query has to
look in BOTH partitions.  ``statement_partition_keys`` returns them as a
``CandidateKeySet`` and query code iterates it without caring which key
is which.  A legacy partition holds every mailbox with that local part,
so readers keep only the rows whose actor matches.
"""

from __future__ import annotations

import base64
import re
from collections.abc import Iterator
from dataclasses import dataclass

from lrs.models.actor import Actor

UNKNOWN = "unknown"
MAX_PARTITION_KEY_LENGTH = 50
MAX_ROW_KEY_LENGTH = 255

# Separator between the activity and actor halves of a state partition
# key, and between state name and registration in a state row key.
KEY_SEPARATOR = "|"

_DISALLOWED = re.compile(r"[\\/#?]")
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")

_STATE_ACTIVITY_LENGTH = 30
_STATE_ACTOR_LENGTH = 20


@dataclass(frozen=True, slots=True)
class CandidateKeySet:
    """Ordered, de-duplicated partition keys to consult for one actor."""

    keys: tuple[str, ...]

    @staticmethod
    def of(*keys: str | None) -> CandidateKeySet:
        seen: list[str] = []
        for key in keys:
            if key and key not in seen:
                seen.append(key)
        return CandidateKeySet(tuple(seen))

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __getitem__(self, index: int) -> str:
        return self.keys[index]


def sanitize_key(value: object, max_length: int = MAX_PARTITION_KEY_LENGTH) -> str:
    """Make ``value`` safe to use as a key: replace ``\\ / # ?``, drop control chars, truncate."""
    if value is None or value == "":
        return UNKNOWN
    cleaned = _CONTROL.sub("", _DISALLOWED.sub("_", str(value)))
    return cleaned[:max_length] or UNKNOWN


def _fragment(value: object, max_length: int) -> str:
    # Fragments that get joined with KEY_SEPARATOR must not contain it.
    return sanitize_key(value, max_length).replace(KEY_SEPARATOR, "_")


def statement_partition_key(actor: Actor | None) -> str:
    identifier = actor.identifier if actor is not None else None
    return sanitize_key(identifier)


def legacy_statement_partition_key(actor: Actor | None) -> str | None:
    """Old-scheme key: mailbox local part.  ``None`` for non-mailbox actors."""
    if actor is None or not actor.email:
        return None
    local_part = actor.email.split("@", 1)[0]
    if not local_part:
        return None
    return sanitize_key(local_part)


def statement_partition_keys(actor: Actor | None) -> CandidateKeySet:
    return CandidateKeySet.of(
        statement_partition_key(actor),
        legacy_statement_partition_key(actor),
    )


def statement_row_key(statement_id: str) -> str:
    """Sort key for a statement: the trailing path segment of its id."""
    segment = statement_id.rstrip("/").rsplit("/", 1)[-1] or statement_id
    return sanitize_key(segment, MAX_ROW_KEY_LENGTH)


def state_partition_key(activity_id: str | None, actor: Actor | None) -> str:
    local_part = actor.local_part if actor is not None else None
    return (
        f"{_fragment(activity_id, _STATE_ACTIVITY_LENGTH)}"
        f"{KEY_SEPARATOR}"
        f"{_fragment(local_part, _STATE_ACTOR_LENGTH)}"
    )


def state_row_key(state_id: str, registration: str | None = None) -> str:
    name = _fragment(state_id, MAX_ROW_KEY_LENGTH)
    if not registration:
        return name
    return f"{name}{KEY_SEPARATOR}{_fragment(registration, MAX_ROW_KEY_LENGTH)}"


def progress_partition_key(user_id: str | None) -> str:
    """The learner id itself, not cut to ``MAX_PARTITION_KEY_LENGTH``.

    Progress rows are looked up by exact learner; a 50-character cut would
    put long mailboxes that share a prefix into one partition.
    """
    return sanitize_key(user_id, MAX_ROW_KEY_LENGTH)


def progress_row_key(course_id: str) -> str:
    return sanitize_key(course_id, MAX_ROW_KEY_LENGTH)


def attempt_row_key(registration: str) -> str:
    return sanitize_key(registration, MAX_ROW_KEY_LENGTH)


def encode_key_segment(value: str) -> str:
    """Reversible base64url encoding for values (URIs, emails) used as sort keys."""
    if not value:
        return ""
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def decode_key_segment(encoded: str) -> str:
    if not encoded:
        return ""
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        # Rows written before values were encoded
        return encoded
