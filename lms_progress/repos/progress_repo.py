"""Typed access to the progress tables.

One method per operation the reliability layer needs, each with explicit
input and output types, so callers never spell table names or column
strings.  Everything is expressed in terms of the three RowStore
operations underneath.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict
from typing import Any

from lms_progress.models.course import CourseAssignment, CourseStructure, Unit
from lms_progress.models.progress import CourseProgress, ProgressStatus, UnitProgress
from lms_progress.repos.row_store import MergeRule, RowStore, row_store

LESSONS = "lessons"
UNITS = "units"
ASSIGNMENTS = "course_assignments"
UNIT_PROGRESS = "user_unit_progress"
COURSE_PROGRESS = "user_course_progress"

UNIT_PROGRESS_KEY = ("user_id", "unit_id", "course_id")
COURSE_PROGRESS_KEY = ("user_id", "course_id")
ASSIGNMENT_KEY = ("user_id", "course_id")

# Conflict keys for every table a snapshot may need to replay.
TABLE_KEYS: dict[str, tuple[str, ...]] = {
    UNIT_PROGRESS: UNIT_PROGRESS_KEY,
    COURSE_PROGRESS: COURSE_PROGRESS_KEY,
    ASSIGNMENTS: ASSIGNMENT_KEY,
}

# Completion timestamps and the method that completed a unit are set once;
# a late retry or a second tab cannot move them.  Watch percentage and quiz
# score only ratchet upwards so a stale write cannot regress them.
UNIT_PROGRESS_MERGE: dict[str, MergeRule] = {
    "completed_at": "first",
    "completion_method": "first",
    "video_completed_at": "first",
    "quiz_completed_at": "first",
    "video_watch_percentage": "max",
    "quiz_score": "max",
}


class ProgressRepo:
    def __init__(self, store: RowStore) -> None:
        self._store = store

    @property
    def store(self) -> RowStore:
        return self._store

    # --- course structure ---

    async def get_course_structures(
        self, course_ids: Iterable[str]
    ) -> dict[str, CourseStructure]:
        ids = list(dict.fromkeys(course_ids))
        if not ids:
            return {}
        lessons = await self._store.select(LESSONS, {"course_id": ids})
        lesson_course = {row["id"]: row["course_id"] for row in lessons}
        units = (
            await self._store.select(UNITS, {"lesson_id": list(lesson_course)})
            if lesson_course
            else []
        )

        lesson_ids: dict[str, list[str]] = {cid: [] for cid in ids}
        unit_ids: dict[str, set[str]] = {cid: set() for cid in ids}
        for row in sorted(lessons, key=lambda r: r.get("position") or 0):
            lesson_ids[row["course_id"]].append(row["id"])
        for row in units:
            unit_ids[lesson_course[row["lesson_id"]]].add(row["id"])

        return {
            cid: CourseStructure(
                course_id=cid,
                lesson_ids=tuple(lesson_ids[cid]),
                unit_ids=frozenset(unit_ids[cid]),
            )
            for cid in ids
        }

    async def get_unit(self, unit_id: str) -> Unit | None:
        rows = await self._store.select(UNITS, {"id": unit_id})
        if not rows:
            return None
        row = rows[0]
        return Unit(
            id=row["id"],
            lesson_id=row["lesson_id"],
            title=row.get("title") or "",
            video_url=row.get("video_url"),
            position=row.get("position") or 0,
        )

    async def get_unit_course_id(self, unit_id: str) -> str | None:
        unit = await self.get_unit(unit_id)
        if unit is None:
            return None
        lessons = await self._store.select(LESSONS, {"id": unit.lesson_id})
        return lessons[0]["course_id"] if lessons else None

    # --- unit progress (ground truth) ---

    async def get_unit_progress(
        self, user_id: str, unit_id: str, course_id: str
    ) -> UnitProgress | None:
        rows = await self._store.select(
            UNIT_PROGRESS,
            {"user_id": user_id, "unit_id": unit_id, "course_id": course_id},
        )
        return _row_to_unit_progress(rows[0]) if rows else None

    async def list_unit_progress(
        self,
        *,
        user_ids: Iterable[str] | None = None,
        course_ids: Iterable[str] | None = None,
        completed: bool | None = None,
    ) -> list[UnitProgress]:
        filter: dict[str, Any] = {}
        if user_ids is not None:
            filter["user_id"] = list(user_ids)
        if course_ids is not None:
            filter["course_id"] = list(course_ids)
        if completed is not None:
            filter["completed"] = completed
        rows = await self._store.select(UNIT_PROGRESS, filter)
        return [_row_to_unit_progress(r) for r in rows]

    async def upsert_unit_progress(
        self, user_id: str, unit_id: str, course_id: str, fields: Mapping[str, Any]
    ) -> UnitProgress:
        row = {
            "user_id": user_id,
            "unit_id": unit_id,
            "course_id": course_id,
            **fields,
        }
        stored = await self._store.upsert(
            UNIT_PROGRESS, row, UNIT_PROGRESS_KEY, merge=UNIT_PROGRESS_MERGE
        )
        return _row_to_unit_progress(stored)

    async def delete_unit_progress(self, user_id: str, course_id: str) -> int:
        return await self._store.delete(
            UNIT_PROGRESS, {"user_id": user_id, "course_id": course_id}
        )

    # --- course progress (rollup) ---

    async def get_course_progress(
        self, user_id: str, course_id: str
    ) -> CourseProgress | None:
        rows = await self._store.select(
            COURSE_PROGRESS, {"user_id": user_id, "course_id": course_id}
        )
        return _row_to_course_progress(rows[0]) if rows else None

    async def list_course_progress(
        self,
        *,
        user_ids: Iterable[str] | None = None,
        course_ids: Iterable[str] | None = None,
    ) -> list[CourseProgress]:
        filter: dict[str, Any] = {}
        if user_ids is not None:
            filter["user_id"] = list(user_ids)
        if course_ids is not None:
            filter["course_id"] = list(course_ids)
        rows = await self._store.select(COURSE_PROGRESS, filter)
        return [_row_to_course_progress(r) for r in rows]

    async def list_unknown_statuses(self) -> dict[tuple[str, str], str]:
        """Rollup rows whose stored status is not a ProgressStatus, keyed by pair."""
        known = {s.value for s in ProgressStatus}
        rows = await self._store.select(COURSE_PROGRESS)
        return {
            (r["user_id"], r["course_id"]): str(r["status"])
            for r in rows
            if r.get("status") and r["status"] not in known
        }

    async def upsert_course_progress(self, progress: CourseProgress) -> CourseProgress:
        row = asdict(progress)
        row["status"] = progress.status.value
        stored = await self._store.upsert(COURSE_PROGRESS, row, COURSE_PROGRESS_KEY)
        return _row_to_course_progress(stored)

    async def delete_course_progress(self, user_id: str, course_id: str) -> int:
        return await self._store.delete(
            COURSE_PROGRESS, {"user_id": user_id, "course_id": course_id}
        )

    # --- assignments ---

    async def get_assignment(
        self, user_id: str, course_id: str
    ) -> CourseAssignment | None:
        rows = await self._store.select(
            ASSIGNMENTS, {"user_id": user_id, "course_id": course_id}
        )
        if not rows:
            return None
        row = rows[0]
        return CourseAssignment(
            user_id=row["user_id"],
            course_id=row["course_id"],
            assigned_by=row.get("assigned_by"),
            assigned_at=row.get("assigned_at"),
        )

    async def upsert_assignment(self, assignment: CourseAssignment) -> None:
        await self._store.upsert(ASSIGNMENTS, asdict(assignment), ASSIGNMENT_KEY)


def _row_to_unit_progress(row: Mapping[str, Any]) -> UnitProgress:
    return UnitProgress(
        user_id=row["user_id"],
        unit_id=row["unit_id"],
        course_id=row["course_id"],
        completed=bool(row.get("completed")),
        completed_at=row.get("completed_at"),
        completion_method=row.get("completion_method"),
        video_completed=bool(row.get("video_completed")),
        video_completed_at=row.get("video_completed_at"),
        video_watch_percentage=row.get("video_watch_percentage") or 0,
        quiz_completed=bool(row.get("quiz_completed")),
        quiz_completed_at=row.get("quiz_completed_at"),
        quiz_score=row.get("quiz_score"),
        updated_at=row.get("updated_at"),
    )


def _row_to_course_progress(row: Mapping[str, Any]) -> CourseProgress:
    raw_status = row.get("status") or ProgressStatus.NOT_STARTED.value
    try:
        status = ProgressStatus(raw_status)
    except ValueError:
        # Loads as not_started; list_unknown_statuses() reports the raw value.
        status = ProgressStatus.NOT_STARTED
    return CourseProgress(
        user_id=row["user_id"],
        course_id=row["course_id"],
        status=status,
        progress_percentage=int(row.get("progress_percentage") or 0),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        last_accessed_at=row.get("last_accessed_at"),
        updated_at=row.get("updated_at"),
    )


progress_repo = ProgressRepo(row_store)
