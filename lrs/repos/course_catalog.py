from __future__ import annotations

import json
from typing import Protocol, runtime_checkable

from lrs.models.course import Course


@runtime_checkable
class CourseCatalog(Protocol):
    """Read side of the course catalog.  CRUD lives elsewhere."""

    async def get(self, course_id: str) -> Course | None: ...
    async def find_by_activity_id(self, activity_id: str) -> Course | None: ...


class InMemoryCourseCatalog:
    def __init__(self, courses: list[Course] | None = None) -> None:
        self._by_id: dict[str, Course] = {}
        for course in courses or []:
            self.register(course)

    @staticmethod
    def from_file(path: str) -> InMemoryCourseCatalog:
        """Load ``[{"id", "activityId", "title"}, ...]`` from a JSON file."""
        with open(path, encoding="utf-8") as f:
            entries = json.load(f)
        if not isinstance(entries, list):
            raise ValueError(f"{path}: expected a JSON list of courses")
        return InMemoryCourseCatalog(
            [
                Course(
                    id=str(e["id"]),
                    activity_id=str(e["activityId"]),
                    title=str(e.get("title", "")),
                )
                for e in entries
            ]
        )

    def register(self, course: Course) -> None:
        self._by_id[course.id] = course

    def clear(self) -> None:
        self._by_id.clear()

    async def get(self, course_id: str) -> Course | None:
        return self._by_id.get(course_id)

    async def find_by_activity_id(self, activity_id: str) -> Course | None:
        """Resolve a statement's object id to the course that owns it.

        Tries, in order: exact root activity match, the base id (text
        before the first ``/``), then any course whose root activity is
        a ``/``-prefix of the id.
        """
        if not activity_id:
            return None
        courses = list(self._by_id.values())

        for course in courses:
            if course.activity_id == activity_id:
                return course

        base_id = activity_id.split("/", 1)[0]
        if base_id != activity_id:
            for course in courses:
                if course.activity_id == base_id:
                    return course

        for course in courses:
            if course.activity_id and activity_id.startswith(course.activity_id + "/"):
                return course
        return None
