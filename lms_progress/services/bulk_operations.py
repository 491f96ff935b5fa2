"""Safe bulk operations for admin tooling.

Every bulk mutation runs through SafeBulkOperations._run():

  1. snapshot every row the operation may touch (backup id
     ``progress_backup_<ts>_<suffix>``); if the snapshot fails, stop
  2. mutate in batches of BULK_BATCH_SIZE, rows in a batch concurrently
  3. record a RowOutcome per row; one failing row never stops the rest
  4. return {backup_id, processed, failed, errors, warnings, outcomes}

The backup id doubles as an audit id: SnapshotService.restore() can put
the captured rows back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any, TypeVar

from lms_progress.core.config import SETTINGS
from lms_progress.core.metrics import BULK_ROWS
from lms_progress.errors import TransientStoreError
from lms_progress.models.audit import BulkOperationResult, RowOutcome
from lms_progress.models.completion import now_epoch
from lms_progress.models.course import CourseAssignment
from lms_progress.repos.progress_repo import ProgressRepo, progress_repo
from lms_progress.services.progress_service import (
    ProgressCalculationService,
    progress_service,
)
from lms_progress.services.snapshot_service import SnapshotService, snapshot_service

logger = logging.getLogger(__name__)

T = TypeVar("T")
RowHandler = Callable[[T], Awaitable[str | None]]


class SafeBulkOperations:
    def __init__(
        self,
        repo: ProgressRepo,
        progress: ProgressCalculationService,
        snapshots: SnapshotService,
        *,
        batch_size: int = SETTINGS.bulk_batch_size,
        clock: Callable[[], int] = now_epoch,
    ) -> None:
        self._repo = repo
        self._progress = progress
        self._snapshots = snapshots
        self._batch_size = batch_size
        self._clock = clock

    async def _run(
        self,
        operation: str,
        reason: str,
        items: Sequence[T],
        key: Callable[[T], str],
        handler: RowHandler,
        backup_pairs: Iterable[tuple[str, str]],
        *,
        include_assignments: bool = False,
    ) -> BulkOperationResult:
        if not items:
            return BulkOperationResult(
                operation=operation, backup_id=None, errors=["Nothing to process"]
            )

        try:
            snapshot = await self._snapshots.capture_pairs(
                operation,
                reason,
                backup_pairs,
                include_assignments=include_assignments,
                audit_id=self._snapshots.new_audit_id("progress_backup"),
            )
        except TransientStoreError as exc:
            logger.error("%s aborted, backup failed: %s", operation, exc)
            return BulkOperationResult(
                operation=operation,
                backup_id=None,
                errors=[f"Failed to create backup, nothing was changed: {exc}"],
            )

        result = BulkOperationResult(operation=operation, backup_id=snapshot.audit_id)
        for start in range(0, len(items), self._batch_size):
            batch = items[start : start + self._batch_size]
            outcomes = await asyncio.gather(
                *(self._one(operation, item, key(item), handler) for item in batch)
            )
            for outcome, warning in outcomes:
                result.outcomes.append(outcome)
                if outcome.ok:
                    result.processed += 1
                    BULK_ROWS.labels(operation=operation, result="processed").inc()
                else:
                    result.failed += 1
                    result.errors.append(f"{outcome.key}: {outcome.error}")
                    BULK_ROWS.labels(operation=operation, result="failed").inc()
                if warning:
                    result.warnings.append(f"{outcome.key}: {warning}")

        logger.info(
            "%s finished: %d processed, %d failed",
            operation,
            result.processed,
            result.failed,
            extra={"backup_id": result.backup_id},
        )
        return result

    async def _one(
        self, operation: str, item: T, key: str, handler: RowHandler
    ) -> tuple[RowOutcome, str | None]:
        try:
            warning = await handler(item)
        except Exception as exc:
            logger.exception("%s failed for %s", operation, key)
            return RowOutcome(key=key, ok=False, error=str(exc) or type(exc).__name__), None
        return RowOutcome(key=key, ok=True), warning

    # --- assignments ---

    async def bulk_assign_course(
        self,
        user_ids: Iterable[str],
        course_id: str,
        assigned_by: str | None = None,
    ) -> BulkOperationResult:
        users = list(dict.fromkeys(user_ids))
        structure = (await self._progress.get_course_structures([course_id]))[course_id]

        async def assign(user_id: str) -> str | None:
            existing = await self._repo.get_assignment(user_id, course_id)
            await self._repo.upsert_assignment(
                CourseAssignment(
                    user_id=user_id,
                    course_id=course_id,
                    assigned_by=assigned_by,
                    assigned_at=self._clock(),
                )
            )
            return "already assigned; assignment refreshed" if existing else None

        result = await self._run(
            "bulk_assign_course",
            f"assign course {course_id}",
            users,
            lambda u: f"{u}/{course_id}",
            assign,
            [(u, course_id) for u in users],
            include_assignments=True,
        )
        if structure.total_units == 0:
            result.warnings.append(f"course {course_id} has no units")
        return result

    # --- progress ---

    async def bulk_reset_progress(
        self,
        pairs: Iterable[tuple[str, str]],
        reason: str = "Administrative reset",
    ) -> BulkOperationResult:
        items = list(dict.fromkeys(pairs))

        async def reset(pair: tuple[str, str]) -> str | None:
            user_id, course_id = pair
            units = await self._repo.delete_unit_progress(user_id, course_id)
            rollups = await self._repo.delete_course_progress(user_id, course_id)
            return None if units or rollups else "no progress to reset"

        return await self._run(
            "bulk_reset_progress",
            reason,
            items,
            lambda p: f"{p[0]}/{p[1]}",
            reset,
            items,
        )

    async def bulk_mark_course_completed(
        self,
        pairs: Iterable[tuple[str, str]],
        completed_at: int | None = None,
        reason: str = "Bulk mark completed",
    ) -> BulkOperationResult:
        items = list(dict.fromkeys(pairs))
        structures = await self._progress.get_course_structures(c for _, c in items)

        async def complete(pair: tuple[str, str]) -> str | None:
            user_id, course_id = pair
            structure = structures[course_id]
            if structure.total_units == 0:
                raise ValueError(f"course {course_id} has no units")
            stamp = completed_at or self._clock()
            for unit_id in sorted(structure.unit_ids):
                await self._repo.upsert_unit_progress(
                    user_id,
                    unit_id,
                    course_id,
                    {
                        "completed": True,
                        "completed_at": stamp,
                        "completion_method": "admin_bulk",
                        "updated_at": self._clock(),
                    },
                )
            await self._progress.calculate_course_progress(user_id, course_id)
            return None

        return await self._run(
            "bulk_mark_course_completed",
            reason,
            items,
            lambda p: f"{p[0]}/{p[1]}",
            complete,
            items,
        )

    # --- single units ---

    async def validate_admin_unit_completion(
        self, user_id: str, unit_id: str, course_id: str
    ) -> dict[str, Any]:
        issues: list[str] = []
        warnings: list[str] = []

        if await self._repo.get_assignment(user_id, course_id) is None:
            issues.append("User is not assigned to this course")
        structure = (await self._progress.get_course_structures([course_id]))[course_id]
        if unit_id not in structure.unit_ids:
            issues.append("Unit does not belong to this course")
        existing = await self._repo.get_unit_progress(user_id, unit_id, course_id)
        if existing is not None and existing.completed:
            warnings.append("Unit is already completed")

        return {"is_valid": not issues, "issues": issues, "warnings": warnings}

    async def bulk_admin_mark_units_complete(
        self,
        triples: Iterable[tuple[str, str, str]],
        reason: str,
    ) -> BulkOperationResult:
        """Mark (user_id, unit_id, course_id) triples complete on an admin's say."""
        items = list(dict.fromkeys(triples))

        async def complete(triple: tuple[str, str, str]) -> str | None:
            user_id, unit_id, course_id = triple
            check = await self.validate_admin_unit_completion(user_id, unit_id, course_id)
            if not check["is_valid"]:
                raise ValueError("; ".join(check["issues"]))
            now = self._clock()
            await self._repo.upsert_unit_progress(
                user_id,
                unit_id,
                course_id,
                {
                    "completed": True,
                    "completed_at": now,
                    "completion_method": "admin",
                    "updated_at": now,
                },
            )
            await self._progress.calculate_course_progress(user_id, course_id)
            return "; ".join(check["warnings"]) or None

        return await self._run(
            "admin_mark_units_complete",
            reason,
            items,
            lambda t: f"{t[0]}/{t[1]}",
            complete,
            [(u, c) for u, _, c in items],
        )

    async def admin_mark_unit_complete(
        self, user_id: str, unit_id: str, course_id: str, reason: str
    ) -> BulkOperationResult:
        return await self.bulk_admin_mark_units_complete(
            [(user_id, unit_id, course_id)], reason
        )


bulk_operations = SafeBulkOperations(progress_repo, progress_service, snapshot_service)
