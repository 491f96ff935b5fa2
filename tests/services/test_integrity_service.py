from __future__ import annotations

import asyncio

from lms_progress.repos.progress_repo import COURSE_PROGRESS, ProgressRepo
from lms_progress.repos.row_store import InMemoryRowStore
from lms_progress.services.cache import InMemoryCacheService
from lms_progress.services.integrity_service import IntegrityService
from lms_progress.services.progress_service import ProgressCalculationService
from lms_progress.services.snapshot_service import SNAPSHOTS, SnapshotService
from tests.conftest import FlakyRowStore, seed_course

NOW = 1_700_000_000
_PAIR_KEY = ("user_id", "course_id")


def _integrity(store: InMemoryRowStore) -> IntegrityService:
    repo = ProgressRepo(store)
    progress = ProgressCalculationService(repo, InMemoryCacheService(), clock=lambda: NOW)
    return IntegrityService(repo, progress, SnapshotService(store, clock=lambda: NOW))


async def _seed_drift(store: InMemoryRowStore) -> None:
    """Five units, two done; one learner's rollup says completed at 40%."""
    await seed_course(store, "c1", ["u1", "u2", "u3", "u4", "u5"])
    repo = ProgressRepo(store)
    for user_id in ("drifted", "healthy"):
        for unit_id in ("u1", "u2"):
            await repo.upsert_unit_progress(
                user_id, unit_id, "c1", {"completed": True, "completed_at": NOW}
            )
    await store.upsert(
        COURSE_PROGRESS,
        {
            "user_id": "drifted",
            "course_id": "c1",
            "status": "completed",
            "progress_percentage": 40,
        },
        _PAIR_KEY,
    )
    await store.upsert(
        COURSE_PROGRESS,
        {
            "user_id": "healthy",
            "course_id": "c1",
            "status": "in_progress",
            "progress_percentage": 40,
        },
        _PAIR_KEY,
    )


def test_diagnose_clean_store() -> None:
    report = asyncio.run(_integrity(InMemoryRowStore()).diagnose_inconsistencies())
    assert report.total_users == 0
    assert report.health_score == 100.0
    assert report.inconsistent_records == []


def test_diagnose_finds_completed_below_100() -> None:
    store = InMemoryRowStore()
    asyncio.run(_seed_drift(store))
    report = asyncio.run(_integrity(store).diagnose_inconsistencies())

    assert report.total_users == 2
    assert report.inconsistent_users == 1
    assert report.health_score == 50.0
    [record] = report.inconsistent_records
    assert record.user_id == "drifted"
    assert record.stored_status == "completed"
    assert record.expected_status == "in_progress"
    assert record.expected_percentage == 40
    assert "completed below 100%" in record.reason


def test_diagnose_flags_missing_rollup() -> None:
    store = InMemoryRowStore()

    async def _seed() -> None:
        await seed_course(store, "c1", ["u1", "u2"])
        await ProgressRepo(store).upsert_unit_progress(
            "learner", "u1", "c1", {"completed": True}
        )

    asyncio.run(_seed())
    report = asyncio.run(_integrity(store).diagnose_inconsistencies())
    [record] = report.inconsistent_records
    assert record.stored_percentage is None
    assert record.reason == "missing rollup"


def test_diagnose_is_read_only() -> None:
    store = InMemoryRowStore()
    asyncio.run(_seed_drift(store))
    before = asyncio.run(store.select(COURSE_PROGRESS))
    asyncio.run(_integrity(store).diagnose_inconsistencies())
    assert asyncio.run(store.select(COURSE_PROGRESS)) == before
    assert asyncio.run(store.select(SNAPSHOTS)) == []


def test_diagnose_sample_is_bounded() -> None:
    store = InMemoryRowStore()

    async def _seed() -> None:
        await seed_course(store, "c1", ["u1"])
        repo = ProgressRepo(store)
        for i in range(15):
            await repo.upsert_unit_progress(f"user-{i:02d}", "u1", "c1", {"completed": True})

    asyncio.run(_seed())
    report = asyncio.run(_integrity(store).diagnose_inconsistencies(sample_size=10))
    assert len(report.inconsistent_records) == 15
    assert len(report.sample_records) == 10


def test_repair_fixes_drift_and_keeps_pre_image() -> None:
    store = InMemoryRowStore()
    asyncio.run(_seed_drift(store))
    integrity = _integrity(store)

    result = asyncio.run(integrity.repair_all("fix completed-at-40 rows"))
    assert result.errors == []
    assert result.records_updated == 1
    assert result.users_affected == 1
    assert result.audit_id is not None

    [fixed] = asyncio.run(store.select(COURSE_PROGRESS, {"user_id": "drifted"}))
    assert fixed["status"] == "in_progress"
    assert fixed["progress_percentage"] == 40

    snapshot = asyncio.run(integrity._snapshots.get(result.audit_id))
    assert snapshot.operation == "repair_all"
    assert snapshot.reason == "fix completed-at-40 rows"
    [pre_image] = snapshot.rows[COURSE_PROGRESS]
    assert pre_image["status"] == "completed"

    after = asyncio.run(integrity.diagnose_inconsistencies())
    assert after.inconsistent_records == []


def test_repair_with_nothing_to_fix() -> None:
    result = asyncio.run(_integrity(InMemoryRowStore()).repair_all("routine"))
    assert result.records_updated == 0
    assert result.audit_id is None
    assert result.warnings == ["No inconsistencies found"]


def test_repair_requires_reason() -> None:
    result = asyncio.run(_integrity(InMemoryRowStore()).repair_all("  "))
    assert result.errors == ["A reason is required for repair"]


def test_repair_aborts_when_snapshot_fails() -> None:
    store = FlakyRowStore(tables={SNAPSHOTS})
    asyncio.run(_seed_drift(store))
    store.fail_upserts = 1

    result = asyncio.run(_integrity(store).repair_all("fix"))
    assert result.records_updated == 0
    assert result.audit_id is None
    assert "nothing was changed" in result.errors[0]
    [untouched] = asyncio.run(store.select(COURSE_PROGRESS, {"user_id": "drifted"}))
    assert untouched["status"] == "completed"


def test_validate_progress_integrity() -> None:
    store = InMemoryRowStore()

    async def _seed() -> None:
        await _seed_drift(store)
        await store.upsert(
            COURSE_PROGRESS,
            {"user_id": "x", "course_id": "gone", "status": "in_progress", "progress_percentage": 120},
            _PAIR_KEY,
        )
        await ProgressRepo(store).upsert_unit_progress(
            "healthy", "u3", "c1", {"quiz_completed": True}
        )

    asyncio.run(_seed())
    report = asyncio.run(_integrity(store).validate_progress_integrity())
    assert report["is_valid"] is False
    assert any("out of range" in issue for issue in report["issues"])
    assert any("no units" in issue for issue in report["issues"])
    assert any("completed at 40%" in w for w in report["warnings"])
    assert any("quiz completed but unit is not" in w for w in report["warnings"])
    assert report["summary"]["course_progress_records"] == 3


def test_integrity_summary() -> None:
    store = InMemoryRowStore()
    asyncio.run(_seed_drift(store))
    integrity = _integrity(store)

    summary = asyncio.run(integrity.get_integrity_summary())
    assert summary["status"] == "NEEDS_ATTENTION"
    assert summary["inconsistent_records"] == 1
    assert summary["recommended_action"] == "Run progress repair"

    asyncio.run(integrity.repair_all("fix"))
    healthy = asyncio.run(integrity.get_integrity_summary())
    assert healthy["is_healthy"] is True
    assert healthy["status"] == "HEALTHY"


def test_unknown_status_is_flagged_and_repaired() -> None:
    store = InMemoryRowStore()

    async def _seed() -> None:
        await seed_course(store, "c1", ["u1", "u2"])
        await store.upsert(
            COURSE_PROGRESS,
            {"user_id": "x", "course_id": "c1", "status": "archived", "progress_percentage": 0},
            _PAIR_KEY,
        )

    asyncio.run(_seed())
    integrity = _integrity(store)

    report = asyncio.run(integrity.diagnose_inconsistencies())
    [record] = report.inconsistent_records
    assert record.stored_status == "archived"
    assert "unknown status 'archived'" in record.reason

    validation = asyncio.run(integrity.validate_progress_integrity())
    assert validation["is_valid"] is False
    assert any("unknown status 'archived'" in i for i in validation["issues"])

    result = asyncio.run(integrity.repair_all("normalize statuses"))
    assert result.records_updated == 1
    [row] = asyncio.run(store.select(COURSE_PROGRESS))
    assert row["status"] == "not_started"
    assert asyncio.run(integrity.diagnose_inconsistencies()).inconsistent_records == []
