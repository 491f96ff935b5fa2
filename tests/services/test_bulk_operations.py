from __future__ import annotations

import asyncio

from lms_progress.models.course import CourseAssignment
from lms_progress.repos.progress_repo import (
    ASSIGNMENTS,
    COURSE_PROGRESS,
    UNIT_PROGRESS,
    ProgressRepo,
)
from lms_progress.repos.row_store import InMemoryRowStore
from lms_progress.services.bulk_operations import SafeBulkOperations
from lms_progress.services.cache import InMemoryCacheService
from lms_progress.services.progress_service import ProgressCalculationService
from lms_progress.services.snapshot_service import SNAPSHOTS, SnapshotService
from tests.conftest import FlakyRowStore, seed_course

NOW = 1_700_000_000


def _bulk(store: InMemoryRowStore, batch_size: int = 2) -> SafeBulkOperations:
    repo = ProgressRepo(store)
    progress = ProgressCalculationService(repo, InMemoryCacheService(), clock=lambda: NOW)
    return SafeBulkOperations(
        repo,
        progress,
        SnapshotService(store, clock=lambda: NOW),
        batch_size=batch_size,
        clock=lambda: NOW,
    )


# ---- assignment ----


def test_bulk_assign_course() -> None:
    store = InMemoryRowStore()
    asyncio.run(seed_course(store, "c1", ["u1"]))
    asyncio.run(ProgressRepo(store).upsert_assignment(CourseAssignment("already", "c1")))

    result = asyncio.run(
        _bulk(store).bulk_assign_course(["a", "b", "already", "a"], "c1", assigned_by="admin")
    )
    assert result.success is True
    assert result.processed == 3
    assert result.failed == 0
    assert result.backup_id is not None and result.backup_id.startswith("progress_backup_")
    assert result.warnings == ["already/c1: already assigned; assignment refreshed"]
    rows = asyncio.run(store.select(ASSIGNMENTS))
    assert {r["user_id"] for r in rows} == {"a", "b", "already"}
    assert all(r["assigned_by"] == "admin" for r in rows)


def test_bulk_assign_warns_about_empty_course() -> None:
    result = asyncio.run(_bulk(InMemoryRowStore()).bulk_assign_course(["a"], "hollow"))
    assert result.processed == 1
    assert "course hollow has no units" in result.warnings


def test_nothing_to_process() -> None:
    result = asyncio.run(_bulk(InMemoryRowStore()).bulk_reset_progress([]))
    assert result.success is False
    assert result.errors == ["Nothing to process"]
    assert result.backup_id is None


# ---- reset ----


def test_bulk_reset_progress_backs_up_then_deletes() -> None:
    store = InMemoryRowStore()
    bulk = _bulk(store)

    async def _seed() -> None:
        await seed_course(store, "c1", ["u1", "u2"])
        repo = ProgressRepo(store)
        await repo.upsert_unit_progress("a", "u1", "c1", {"completed": True})
        await bulk._progress.calculate_course_progress("a", "c1")

    asyncio.run(_seed())
    result = asyncio.run(bulk.bulk_reset_progress([("a", "c1"), ("nobody", "c1")], "cohort reset"))

    assert result.processed == 2
    assert result.warnings == ["nobody/c1: no progress to reset"]
    assert asyncio.run(store.select(UNIT_PROGRESS)) == []
    assert asyncio.run(store.select(COURSE_PROGRESS)) == []

    snapshot = asyncio.run(bulk._snapshots.get(result.backup_id))
    assert snapshot.reason == "cohort reset"
    assert snapshot.row_count == 2

    restored = asyncio.run(bulk._snapshots.restore(result.backup_id))
    assert restored == 2
    assert len(asyncio.run(store.select(UNIT_PROGRESS))) == 1


def test_backup_failure_changes_nothing() -> None:
    store = FlakyRowStore(tables={SNAPSHOTS})
    bulk = _bulk(store)

    async def _seed() -> None:
        await ProgressRepo(store).upsert_unit_progress("a", "u1", "c1", {"completed": True})

    asyncio.run(_seed())
    store.fail_upserts = 1
    result = asyncio.run(bulk.bulk_reset_progress([("a", "c1")]))
    assert result.success is False
    assert result.backup_id is None
    assert "Failed to create backup" in result.errors[0]
    assert len(asyncio.run(store.select(UNIT_PROGRESS))) == 1


# ---- mark completed ----


def test_bulk_mark_course_completed() -> None:
    store = InMemoryRowStore()
    asyncio.run(seed_course(store, "c1", ["u1", "u2", "u3"]))
    result = asyncio.run(
        _bulk(store).bulk_mark_course_completed([("a", "c1"), ("b", "c1")], completed_at=NOW - 5)
    )
    assert result.processed == 2
    units = asyncio.run(store.select(UNIT_PROGRESS))
    assert len(units) == 6
    assert all(u["completion_method"] == "admin_bulk" for u in units)
    assert all(u["completed_at"] == NOW - 5 for u in units)
    rollups = asyncio.run(store.select(COURSE_PROGRESS))
    assert {r["status"] for r in rollups} == {"completed"}


def test_one_failing_row_does_not_stop_the_rest() -> None:
    store = InMemoryRowStore()
    asyncio.run(seed_course(store, "c1", ["u1"]))
    result = asyncio.run(
        _bulk(store, batch_size=1).bulk_mark_course_completed(
            [("a", "c1"), ("a", "no-units"), ("b", "c1")]
        )
    )
    assert result.processed == 2
    assert result.failed == 1
    assert result.errors == ["a/no-units: course no-units has no units"]
    assert [o.ok for o in result.outcomes] == [True, False, True]
    assert result.success is True


# ---- single units ----


def test_validate_admin_unit_completion() -> None:
    store = InMemoryRowStore()
    bulk = _bulk(store)
    asyncio.run(seed_course(store, "c1", ["u1"]))

    unassigned = asyncio.run(bulk.validate_admin_unit_completion("a", "u1", "c1"))
    assert unassigned["is_valid"] is False
    assert "User is not assigned to this course" in unassigned["issues"]

    asyncio.run(ProgressRepo(store).upsert_assignment(CourseAssignment("a", "c1")))
    wrong_unit = asyncio.run(bulk.validate_admin_unit_completion("a", "u9", "c1"))
    assert wrong_unit["issues"] == ["Unit does not belong to this course"]

    asyncio.run(ProgressRepo(store).upsert_unit_progress("a", "u1", "c1", {"completed": True}))
    done = asyncio.run(bulk.validate_admin_unit_completion("a", "u1", "c1"))
    assert done["is_valid"] is True
    assert done["warnings"] == ["Unit is already completed"]


def test_admin_mark_unit_complete() -> None:
    store = InMemoryRowStore()
    bulk = _bulk(store)
    asyncio.run(seed_course(store, "c1", ["u1", "u2"]))
    asyncio.run(ProgressRepo(store).upsert_assignment(CourseAssignment("a", "c1")))

    result = asyncio.run(bulk.admin_mark_unit_complete("a", "u1", "c1", "learner emailed proof"))
    assert result.operation == "admin_mark_units_complete"
    assert result.processed == 1
    [unit] = asyncio.run(store.select(UNIT_PROGRESS))
    assert unit["completion_method"] == "admin"
    [rollup] = asyncio.run(store.select(COURSE_PROGRESS))
    assert rollup["progress_percentage"] == 50


def test_admin_mark_rejects_invalid_rows_individually() -> None:
    store = InMemoryRowStore()
    bulk = _bulk(store)
    asyncio.run(seed_course(store, "c1", ["u1"]))
    asyncio.run(ProgressRepo(store).upsert_assignment(CourseAssignment("a", "c1")))

    result = asyncio.run(
        bulk.bulk_admin_mark_units_complete([("a", "u1", "c1"), ("stranger", "u1", "c1")], "fix")
    )
    assert result.processed == 1
    assert result.failed == 1
    assert result.errors == ["stranger/u1: User is not assigned to this course"]
