from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Course:
    """The slice of a catalog course the record store needs.

    ``activity_id`` is the course's root activity; statements about
    sub-activities use ids of the form ``<activity_id>/<suffix>``.
    """

    id: str
    activity_id: str
    title: str = ""
