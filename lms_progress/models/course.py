from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4


@dataclass(frozen=True, slots=True)
class Lesson:
    id: str
    course_id: str
    position: int = 0

    @staticmethod
    def new(*, course_id: str, position: int = 0) -> Lesson:
        return Lesson(id=str(uuid4()), course_id=course_id, position=position)


@dataclass(frozen=True, slots=True)
class Unit:
    id: str
    lesson_id: str
    title: str = ""
    video_url: str | None = None
    position: int = 0

    @staticmethod
    def new(
        *,
        lesson_id: str,
        title: str = "",
        video_url: str | None = None,
        position: int = 0,
    ) -> Unit:
        return Unit(
            id=str(uuid4()),
            lesson_id=lesson_id,
            title=title,
            video_url=video_url,
            position=position,
        )

    @property
    def has_video(self) -> bool:
        return bool(self.video_url)


@dataclass(frozen=True, slots=True)
class CourseStructure:
    """The full set of unit ids reachable from a course via its lessons."""

    course_id: str
    lesson_ids: tuple[str, ...]
    unit_ids: frozenset[str]

    @property
    def total_units(self) -> int:
        return len(self.unit_ids)


@dataclass(frozen=True, slots=True)
class CourseAssignment:
    user_id: str
    course_id: str
    assigned_by: str | None = None
    assigned_at: int | None = None
