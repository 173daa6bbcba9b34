"""Error taxonomy shared by the stores, the derivation engine and the API.

Three kinds of failure flow through this service:

  - ValidationError: the caller sent something malformed (a filter field
    with punctuation in it, an actor that is not an object, a cursor we
    did not issue).  Never retried, surfaced as 400.

  - StoreError: the storage collaborator failed.  ``status_code`` carries
    the collaborator's HTTP-style classification (``None`` for network
    failures).  The retry executor reads it to decide whether to try
    again: 429 and 5xx are transient, any other 4xx is permanent.

  - VerbNotFoundError: an admin update/remove named a custom verb that
    does not exist.

"Not found" for statements, state and progress is NOT an error here.
Those lookups return ``None`` because a learner with no resume state is
the normal first-launch case, not an exceptional one.
"""

from __future__ import annotations


class LrsError(Exception):
    """Base class for all errors raised by this service."""

    status_code: int | None = 500
    code: str = "INTERNAL_ERROR"


class ValidationError(LrsError, ValueError):
    status_code = 400
    code = "VALIDATION_ERROR"


class VerbNotFoundError(LrsError, KeyError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, verb_id: str) -> None:
        super().__init__(verb_id)
        self.verb_id = verb_id

    def __str__(self) -> str:
        return f"Custom verb {self.verb_id} not found"


class StoreError(LrsError):
    code = "STORE_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
