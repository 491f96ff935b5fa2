"""Course progress recalculation.

The rollup row in user_course_progress is never patched incrementally.
Every call re-reads the course's unit set and the learner's completed
unit rows and derives percentage and status from scratch, so the result
is the same whatever order completions and recalculations arrive in.

Course structure (which units belong to a course) comes through the
read-through cache; completion rows are always read fresh.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from typing import Any

from redis.exceptions import RedisError

from lms_progress.core.metrics import CACHE_OPERATIONS, PROGRESS_RECALCULATIONS
from lms_progress.models.completion import now_epoch
from lms_progress.models.course import CourseStructure
from lms_progress.models.progress import (
    CourseProgress,
    ProgressResult,
    ProgressStatus,
    derive_progress,
)
from lms_progress.repos.progress_repo import ProgressRepo, progress_repo
from lms_progress.services.cache import CacheService, cache_service

logger = logging.getLogger(__name__)

STRUCTURE_CACHE_TTL = 300  # 5 minutes
_STRUCTURE_KEY = "course_structure:"


def _structure_to_json(structure: CourseStructure) -> str:
    return json.dumps(
        {
            "course_id": structure.course_id,
            "lesson_ids": list(structure.lesson_ids),
            "unit_ids": sorted(structure.unit_ids),
        }
    )


def _structure_from_json(raw: str) -> CourseStructure:
    data = json.loads(raw)
    return CourseStructure(
        course_id=data["course_id"],
        lesson_ids=tuple(data["lesson_ids"]),
        unit_ids=frozenset(data["unit_ids"]),
    )


class ProgressCalculationService:
    def __init__(
        self,
        repo: ProgressRepo,
        cache: CacheService,
        *,
        clock: Callable[[], int] = now_epoch,
    ) -> None:
        self._repo = repo
        self._cache = cache
        self._clock = clock

    # --- course structure ---

    async def get_course_structures(
        self, course_ids: Iterable[str]
    ) -> dict[str, CourseStructure]:
        ids = list(dict.fromkeys(course_ids))
        structures: dict[str, CourseStructure] = {}
        missing: list[str] = []

        for course_id in ids:
            raw = await self._cache_get(f"{_STRUCTURE_KEY}{course_id}")
            if raw is None:
                CACHE_OPERATIONS.labels(operation="miss").inc()
                missing.append(course_id)
            else:
                CACHE_OPERATIONS.labels(operation="hit").inc()
                structures[course_id] = _structure_from_json(raw)

        if missing:
            loaded = await self._repo.get_course_structures(missing)
            for course_id, structure in loaded.items():
                structures[course_id] = structure
                await self._cache_set(
                    f"{_STRUCTURE_KEY}{course_id}", _structure_to_json(structure)
                )

        return {cid: structures[cid] for cid in ids}

    async def invalidate_course_cache(self, course_id: str | None = None) -> None:
        """Drop one course's cached structure, or all of them."""
        if course_id:
            await self._cache.delete(f"{_STRUCTURE_KEY}{course_id}")
        else:
            await self._cache.delete_pattern(f"{_STRUCTURE_KEY}*")
        logger.info("Invalidated course structure cache for %s", course_id or "all courses")

    async def _cache_get(self, key: str) -> str | None:
        try:
            return await self._cache.get(key)
        except RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None

    async def _cache_set(self, key: str, value: str) -> None:
        try:
            await self._cache.set(key, value, STRUCTURE_CACHE_TTL)
        except RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    # --- derivation ---

    async def compute_progress(
        self, user_id: str, course_ids: Iterable[str]
    ) -> dict[str, ProgressResult]:
        """Derive progress for each course without writing anything."""
        structures = await self.get_course_structures(course_ids)
        if not structures:
            return {}
        completed_rows = await self._repo.list_unit_progress(
            user_ids=[user_id], course_ids=list(structures), completed=True
        )
        completed: dict[str, set[str]] = {cid: set() for cid in structures}
        for row in completed_rows:
            # Rows for units no longer in the course do not count.
            if row.unit_id in structures[row.course_id].unit_ids:
                completed[row.course_id].add(row.unit_id)

        return {
            cid: derive_progress(len(completed[cid]), structure.total_units)
            for cid, structure in structures.items()
        }

    async def calculate_course_progress(
        self, user_id: str, course_id: str
    ) -> ProgressResult:
        results = await self._recalculate(user_id, [course_id])
        PROGRESS_RECALCULATIONS.labels(mode="single").inc()
        return results[course_id]

    async def calculate_batch_progress(
        self, user_id: str, course_ids: Iterable[str]
    ) -> dict[str, ProgressResult]:
        results = await self._recalculate(user_id, course_ids)
        PROGRESS_RECALCULATIONS.labels(mode="batch").inc()
        return results

    async def _recalculate(
        self, user_id: str, course_ids: Iterable[str]
    ) -> dict[str, ProgressResult]:
        results = await self.compute_progress(user_id, course_ids)
        if not results:
            return results
        existing = {
            p.course_id: p
            for p in await self._repo.list_course_progress(
                user_ids=[user_id], course_ids=list(results)
            )
        }
        now = self._clock()
        for course_id, result in results.items():
            row = next_course_progress(
                existing.get(course_id), user_id, course_id, result, now
            )
            await self._repo.upsert_course_progress(row)
            logger.info(
                "Recalculated progress: %d%% (%s), %d/%d units",
                result.percentage,
                result.status,
                result.completed_units,
                result.total_units,
                extra={"user_id": user_id, "course_id": course_id},
            )
        return results

    # --- analytics ---

    async def get_detailed_progress(self, user_id: str, course_id: str) -> dict[str, Any]:
        structure = (await self.get_course_structures([course_id]))[course_id]
        rows = [
            r
            for r in await self._repo.list_unit_progress(
                user_ids=[user_id], course_ids=[course_id]
            )
            if r.unit_id in structure.unit_ids
        ]
        watched = [r.video_watch_percentage for r in rows if r.video_watch_percentage]
        return {
            "course_id": course_id,
            "total_units": structure.total_units,
            "completed_units": sum(1 for r in rows if r.completed),
            "video_completed_units": sum(1 for r in rows if r.video_completed),
            "quiz_completed_units": sum(1 for r in rows if r.quiz_completed),
            "average_video_progress": sum(watched) / len(watched) if watched else 0,
            "units": [
                {
                    "unit_id": r.unit_id,
                    "completed": r.completed,
                    "completed_at": r.completed_at,
                    "video_completed": r.video_completed,
                    "video_watch_percentage": r.video_watch_percentage,
                    "quiz_completed": r.quiz_completed,
                    "quiz_score": r.quiz_score,
                }
                for r in sorted(rows, key=lambda r: r.unit_id)
            ],
        }


def next_course_progress(
    existing: CourseProgress | None,
    user_id: str,
    course_id: str,
    result: ProgressResult,
    now: int,
) -> CourseProgress:
    """Build the rollup row that should follow ``existing``.

    started_at is stamped once, on the first move above 0%.  completed_at
    is stamped on entering completed and cleared on leaving it.
    """
    started_at = existing.started_at if existing else None
    if started_at is None and result.percentage > 0:
        started_at = now

    completed_at = None
    if result.status == ProgressStatus.COMPLETED:
        was_completed = existing is not None and existing.status == ProgressStatus.COMPLETED
        completed_at = existing.completed_at if was_completed else None
        if completed_at is None:
            completed_at = now

    return CourseProgress(
        user_id=user_id,
        course_id=course_id,
        status=result.status,
        progress_percentage=result.percentage,
        started_at=started_at,
        completed_at=completed_at,
        last_accessed_at=now,
        updated_at=now,
    )


progress_service = ProgressCalculationService(progress_repo, cache_service)
