"""Integrity diagnostics and repair for course progress rollups.

A (user, course) pair is inconsistent when its user_course_progress row
disagrees with what recalculation would derive from user_unit_progress
right now, when the row claims completed below 100%, when it claims
not_started above 0%, or when its status is not one we know.  A pair
with completed units but no rollup row at all is inconsistent too.

Drift is never fixed in the hot path.  diagnose_inconsistencies() only
reads; repair_all() snapshots every affected row under one audit id
before it overwrites anything, and stops if the snapshot cannot be
written.
"""

from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from typing import Any

from lms_progress.core.metrics import INCONSISTENT_PAIRS, REPAIRED_RECORDS
from lms_progress.errors import TransientStoreError
from lms_progress.models.audit import DiagnosisReport, InconsistentRecord, RepairResult
from lms_progress.models.progress import CourseProgress, ProgressStatus, derive_progress
from lms_progress.repos.progress_repo import ProgressRepo, progress_repo
from lms_progress.services.progress_service import (
    ProgressCalculationService,
    progress_service,
)
from lms_progress.services.snapshot_service import SnapshotService, snapshot_service

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 10


def _inconsistency_reasons(
    stored: CourseProgress | None,
    expected_pct: int,
    expected_status: str,
    raw_status: str | None = None,
) -> list[str]:
    if stored is None:
        return ["missing rollup"] if expected_pct > 0 else []

    reasons = []
    if raw_status is not None:
        reasons.append(f"unknown status {raw_status!r}")
    if stored.progress_percentage != expected_pct or stored.status != expected_status:
        reasons.append("rollup disagrees with unit rows")
    if stored.status == ProgressStatus.COMPLETED and stored.progress_percentage < 100:
        reasons.append("completed below 100%")
    if stored.status == ProgressStatus.NOT_STARTED and stored.progress_percentage > 0:
        reasons.append("not_started above 0%")
    return reasons


class IntegrityService:
    def __init__(
        self,
        repo: ProgressRepo,
        progress: ProgressCalculationService,
        snapshots: SnapshotService,
    ) -> None:
        self._repo = repo
        self._progress = progress
        self._snapshots = snapshots

    async def diagnose_inconsistencies(
        self, sample_size: int = SAMPLE_SIZE
    ) -> DiagnosisReport:
        rollups = {
            (p.user_id, p.course_id): p for p in await self._repo.list_course_progress()
        }
        completed_rows = await self._repo.list_unit_progress(completed=True)
        unknown = await self._repo.list_unknown_statuses()

        pairs = set(rollups)
        pairs.update((r.user_id, r.course_id) for r in completed_rows)
        structures = await self._progress.get_course_structures(
            sorted({c for _, c in pairs})
        )

        completed: dict[tuple[str, str], set[str]] = defaultdict(set)
        for r in completed_rows:
            if r.unit_id in structures[r.course_id].unit_ids:
                completed[(r.user_id, r.course_id)].add(r.unit_id)

        records: list[InconsistentRecord] = []
        for user_id, course_id in sorted(pairs):
            stored = rollups.get((user_id, course_id))
            expected = derive_progress(
                len(completed[(user_id, course_id)]),
                structures[course_id].total_units,
            )
            raw_status = unknown.get((user_id, course_id))
            reasons = _inconsistency_reasons(
                stored, expected.percentage, expected.status, raw_status
            )
            if reasons:
                records.append(
                    InconsistentRecord(
                        user_id=user_id,
                        course_id=course_id,
                        stored_percentage=stored.progress_percentage if stored else None,
                        stored_status=(
                            (raw_status or stored.status.value) if stored else None
                        ),
                        expected_percentage=expected.percentage,
                        expected_status=expected.status.value,
                        reason="; ".join(reasons),
                    )
                )

        total_users = len({u for u, _ in pairs})
        inconsistent_users = len({r.user_id for r in records})
        health_score = (
            100.0 if total_users == 0 else 100.0 * (1 - inconsistent_users / total_users)
        )
        INCONSISTENT_PAIRS.set(len(records))
        if records:
            logger.warning(
                "Progress drift: %d pair(s) across %d of %d user(s)",
                len(records),
                inconsistent_users,
                total_users,
            )

        return DiagnosisReport(
            total_users=total_users,
            inconsistent_users=inconsistent_users,
            health_score=round(health_score, 2),
            sample_records=records[:sample_size],
            inconsistent_records=records,
        )

    async def repair_all(self, reason: str) -> RepairResult:
        if not reason or not reason.strip():
            return RepairResult(
                records_updated=0,
                users_affected=0,
                audit_id=None,
                errors=["A reason is required for repair"],
            )

        report = await self.diagnose_inconsistencies()
        if not report.inconsistent_records:
            return RepairResult(
                records_updated=0,
                users_affected=0,
                audit_id=None,
                warnings=["No inconsistencies found"],
            )

        pairs = [(r.user_id, r.course_id) for r in report.inconsistent_records]
        try:
            snapshot = await self._snapshots.capture_pairs("repair_all", reason, pairs)
        except TransientStoreError as exc:
            logger.error("Repair aborted, snapshot failed: %s", exc)
            return RepairResult(
                records_updated=0,
                users_affected=0,
                audit_id=None,
                errors=[f"Snapshot failed, nothing was changed: {exc}"],
            )

        courses_by_user: dict[str, list[str]] = defaultdict(list)
        for user_id, course_id in pairs:
            courses_by_user[user_id].append(course_id)

        updated = 0
        users: set[str] = set()
        errors: list[str] = []
        for user_id, course_ids in courses_by_user.items():
            try:
                results = await self._progress.calculate_batch_progress(user_id, course_ids)
            except TransientStoreError as exc:
                errors.append(f"user {user_id}: {exc}")
                logger.error(
                    "Repair failed for user: %s",
                    exc,
                    extra={"user_id": user_id, "audit_id": snapshot.audit_id},
                )
                continue
            updated += len(results)
            users.add(user_id)

        REPAIRED_RECORDS.inc(updated)
        INCONSISTENT_PAIRS.set(len(pairs) - updated)
        logger.info(
            "Repair %s updated %d record(s) for %d user(s): %s",
            snapshot.audit_id,
            updated,
            len(users),
            reason,
            extra={"audit_id": snapshot.audit_id},
        )
        return RepairResult(
            records_updated=updated,
            users_affected=len(users),
            audit_id=snapshot.audit_id,
            errors=errors,
        )

    async def validate_progress_integrity(self) -> dict[str, Any]:
        issues: list[str] = []
        warnings: list[str] = []

        rollups = await self._repo.list_course_progress()
        unit_rows = await self._repo.list_unit_progress()
        unknown = await self._repo.list_unknown_statuses()
        structures = await self._progress.get_course_structures(
            sorted({p.course_id for p in rollups})
        )

        for p in rollups:
            label = f"user {p.user_id} course {p.course_id}"
            raw_status = unknown.get((p.user_id, p.course_id))
            if raw_status is not None:
                issues.append(f"{label}: unknown status {raw_status!r}")
            if not 0 <= p.progress_percentage <= 100:
                issues.append(f"{label}: percentage {p.progress_percentage} out of range")
            if structures[p.course_id].total_units == 0:
                issues.append(f"{label}: course has no units")
            if p.status == ProgressStatus.COMPLETED and p.progress_percentage < 100:
                warnings.append(f"{label}: completed at {p.progress_percentage}%")
            if p.status == ProgressStatus.NOT_STARTED and p.progress_percentage > 0:
                warnings.append(f"{label}: not_started at {p.progress_percentage}%")

        for u in unit_rows:
            if u.quiz_completed and not u.completed:
                warnings.append(
                    f"user {u.user_id} unit {u.unit_id}: quiz completed but unit is not"
                )

        return {
            "is_valid": not issues,
            "issues": issues,
            "warnings": warnings,
            "summary": {
                "course_progress_records": len(rollups),
                "unit_progress_records": len(unit_rows),
                "issue_count": len(issues),
                "warning_count": len(warnings),
            },
        }

    async def get_integrity_summary(self) -> dict[str, Any]:
        report = await self.diagnose_inconsistencies()
        inconsistent = len(report.inconsistent_records)
        healthy = inconsistent == 0
        return {
            "is_healthy": healthy,
            "status": "HEALTHY" if healthy else "NEEDS_ATTENTION",
            "message": (
                "All progress data is consistent"
                if healthy
                else f"{inconsistent} records need attention"
            ),
            "recommended_action": (
                "No action needed" if healthy else "Run progress repair"
            ),
            "inconsistent_records": inconsistent,
            "health_score": report.health_score,
            "last_checked": datetime.datetime.now(datetime.UTC).isoformat(),
        }


integrity_service = IntegrityService(progress_repo, progress_service, snapshot_service)
