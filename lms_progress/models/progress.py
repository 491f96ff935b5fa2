from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ProgressStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class UnitProgress:
    """Ground truth: did this learner finish this unit.

    One row per (user_id, unit_id, course_id).
    """

    user_id: str
    unit_id: str
    course_id: str
    completed: bool = False
    completed_at: int | None = None
    completion_method: str | None = None
    video_completed: bool = False
    video_completed_at: int | None = None
    video_watch_percentage: int = 0
    quiz_completed: bool = False
    quiz_completed_at: int | None = None
    quiz_score: int | None = None
    updated_at: int | None = None


@dataclass(frozen=True, slots=True)
class CourseProgress:
    """Rollup derived from UnitProgress; must always be re-derivable from it."""

    user_id: str
    course_id: str
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    progress_percentage: int = 0
    started_at: int | None = None
    completed_at: int | None = None
    last_accessed_at: int | None = None
    updated_at: int | None = None


@dataclass(frozen=True, slots=True)
class ProgressResult:
    percentage: int
    status: ProgressStatus
    total_units: int
    completed_units: int


def derive_progress(completed_units: int, total_units: int) -> ProgressResult:
    """The one rollup rule.

    Python's round() is banker's rounding; percentages use half-up so
    1/8 of a course reads 13%, not 12%.
    """
    if total_units <= 0:
        percentage = 0
    else:
        percentage = int(100 * completed_units / total_units + 0.5)
        percentage = max(0, min(100, percentage))

    if percentage == 100:
        status = ProgressStatus.COMPLETED
    elif percentage > 0:
        status = ProgressStatus.IN_PROGRESS
    else:
        status = ProgressStatus.NOT_STARTED

    return ProgressResult(
        percentage=percentage,
        status=status,
        total_units=total_units,
        completed_units=completed_units,
    )
