from __future__ import annotations

import asyncio

from prometheus_client import REGISTRY
from redis.exceptions import ConnectionError as RedisConnectionError

from lms_progress.models.progress import (
    CourseProgress,
    ProgressResult,
    ProgressStatus,
    derive_progress,
)
from lms_progress.repos.progress_repo import COURSE_PROGRESS, ProgressRepo
from lms_progress.repos.row_store import InMemoryRowStore
from lms_progress.services.cache import InMemoryCacheService
from lms_progress.services.progress_service import (
    ProgressCalculationService,
    next_course_progress,
)
from tests.conftest import seed_course

NOW = 1_700_000_000


def _service(
    store: InMemoryRowStore, cache: InMemoryCacheService | None = None, clock=lambda: NOW
) -> ProgressCalculationService:
    return ProgressCalculationService(
        ProgressRepo(store), cache or InMemoryCacheService(), clock=clock
    )


def _cache_ops(operation: str) -> float:
    value = REGISTRY.get_sample_value("cache_operations_total", {"operation": operation})
    return value if value is not None else 0.0


async def _complete(store: InMemoryRowStore, user_id: str, course_id: str, *unit_ids: str) -> None:
    repo = ProgressRepo(store)
    for unit_id in unit_ids:
        await repo.upsert_unit_progress(
            user_id, unit_id, course_id, {"completed": True, "completed_at": NOW}
        )


# ---- derivation rule ----


def test_derive_progress_rounds_half_up() -> None:
    assert derive_progress(1, 8).percentage == 13
    assert derive_progress(1, 3).percentage == 33
    assert derive_progress(2, 3).percentage == 67


def test_derive_progress_statuses() -> None:
    assert derive_progress(0, 4).status == ProgressStatus.NOT_STARTED
    assert derive_progress(1, 4).status == ProgressStatus.IN_PROGRESS
    assert derive_progress(4, 4).status == ProgressStatus.COMPLETED
    assert derive_progress(0, 0) == ProgressResult(0, ProgressStatus.NOT_STARTED, 0, 0)


def test_derive_progress_status_follows_rounded_percentage() -> None:
    result = derive_progress(199, 200)
    assert result.percentage == 100
    assert result.status == ProgressStatus.COMPLETED
    assert derive_progress(0, 1000).percentage == 0


# ---- recalculation ----


def test_four_unit_course_walkthrough() -> None:
    store = InMemoryRowStore()
    service = _service(store)
    asyncio.run(seed_course(store, "c1", ["u1", "u2", "u3", "u4"]))

    asyncio.run(_complete(store, "learner", "c1", "u1"))
    quarter = asyncio.run(service.calculate_course_progress("learner", "c1"))
    assert (quarter.percentage, quarter.status) == (25, ProgressStatus.IN_PROGRESS)

    asyncio.run(_complete(store, "learner", "c1", "u2", "u3", "u4"))
    done = asyncio.run(service.calculate_course_progress("learner", "c1"))
    assert (done.percentage, done.status) == (100, ProgressStatus.COMPLETED)
    assert (done.completed_units, done.total_units) == (4, 4)

    [row] = asyncio.run(store.select(COURSE_PROGRESS))
    assert row["status"] == "completed"
    assert row["progress_percentage"] == 100
    assert row["completed_at"] == NOW


def test_recalculation_is_idempotent() -> None:
    store = InMemoryRowStore()
    service = _service(store)
    asyncio.run(seed_course(store, "c1", ["u1", "u2"]))
    asyncio.run(_complete(store, "learner", "c1", "u1"))

    first = asyncio.run(service.calculate_course_progress("learner", "c1"))
    rows_after_first = asyncio.run(store.select(COURSE_PROGRESS))
    second = asyncio.run(service.calculate_course_progress("learner", "c1"))
    assert first == second
    assert asyncio.run(store.select(COURSE_PROGRESS)) == rows_after_first


def test_rows_for_units_outside_course_do_not_count() -> None:
    store = InMemoryRowStore()
    service = _service(store)
    asyncio.run(seed_course(store, "c1", ["u1", "u2"]))
    asyncio.run(_complete(store, "learner", "c1", "u1", "removed-unit"))
    result = asyncio.run(service.calculate_course_progress("learner", "c1"))
    assert result.completed_units == 1
    assert result.percentage == 50


def test_batch_progress_covers_every_course() -> None:
    store = InMemoryRowStore()
    service = _service(store)
    asyncio.run(seed_course(store, "c1", ["a1", "a2"]))
    asyncio.run(seed_course(store, "c2", ["b1"]))
    asyncio.run(_complete(store, "learner", "c2", "b1"))

    results = asyncio.run(service.calculate_batch_progress("learner", ["c1", "c2"]))
    assert results["c1"].status == ProgressStatus.NOT_STARTED
    assert results["c2"].status == ProgressStatus.COMPLETED
    assert len(asyncio.run(store.select(COURSE_PROGRESS))) == 2


def test_compute_progress_writes_nothing() -> None:
    store = InMemoryRowStore()
    service = _service(store)
    asyncio.run(seed_course(store, "c1", ["u1"]))
    asyncio.run(_complete(store, "learner", "c1", "u1"))
    results = asyncio.run(service.compute_progress("learner", ["c1"]))
    assert results["c1"].percentage == 100
    assert asyncio.run(store.select(COURSE_PROGRESS)) == []


# ---- timestamps ----


def _result(pct: int) -> ProgressResult:
    return derive_progress(pct, 100)


def test_started_at_set_once_on_first_progress() -> None:
    first = next_course_progress(None, "u", "c", _result(0), NOW)
    assert first.started_at is None
    started = next_course_progress(first, "u", "c", _result(10), NOW + 1)
    assert started.started_at == NOW + 1
    later = next_course_progress(started, "u", "c", _result(20), NOW + 2)
    assert later.started_at == NOW + 1


def test_completed_at_kept_while_completed_and_cleared_on_leaving() -> None:
    done = next_course_progress(None, "u", "c", _result(100), NOW)
    assert done.completed_at == NOW
    still = next_course_progress(done, "u", "c", _result(100), NOW + 5)
    assert still.completed_at == NOW
    regressed = next_course_progress(still, "u", "c", _result(75), NOW + 6)
    assert regressed.completed_at is None
    again = next_course_progress(regressed, "u", "c", _result(100), NOW + 7)
    assert again.completed_at == NOW + 7


def test_completed_at_ignores_stale_value_on_non_completed_row() -> None:
    stale = CourseProgress(
        user_id="u",
        course_id="c",
        status=ProgressStatus.IN_PROGRESS,
        progress_percentage=90,
        completed_at=NOW - 100,
    )
    done = next_course_progress(stale, "u", "c", _result(100), NOW)
    assert done.completed_at == NOW


# ---- structure cache ----


def test_structure_cache_miss_then_hit() -> None:
    store = InMemoryRowStore()
    cache = InMemoryCacheService()
    service = _service(store, cache)
    asyncio.run(seed_course(store, "c1", ["u1"]))

    misses, hits = _cache_ops("miss"), _cache_ops("hit")
    asyncio.run(service.get_course_structures(["c1"]))
    asyncio.run(service.get_course_structures(["c1"]))
    assert _cache_ops("miss") - misses == 1
    assert _cache_ops("hit") - hits == 1
    assert "course_structure:c1" in cache._store


def test_invalidate_course_cache() -> None:
    store = InMemoryRowStore()
    cache = InMemoryCacheService()
    service = _service(store, cache)
    asyncio.run(seed_course(store, "c1", ["u1"]))
    asyncio.run(seed_course(store, "c2", ["u2"]))
    asyncio.run(service.get_course_structures(["c1", "c2"]))

    asyncio.run(service.invalidate_course_cache("c1"))
    assert set(cache._store) == {"course_structure:c2"}
    asyncio.run(service.invalidate_course_cache())
    assert cache._store == {}


def test_stale_structure_served_until_invalidated() -> None:
    store = InMemoryRowStore()
    service = _service(store)
    asyncio.run(seed_course(store, "c1", ["u1"]))
    assert asyncio.run(service.calculate_course_progress("learner", "c1")).total_units == 1

    asyncio.run(seed_course(store, "c1", ["u1", "u2"]))
    assert asyncio.run(service.calculate_course_progress("learner", "c1")).total_units == 1
    asyncio.run(service.invalidate_course_cache("c1"))
    assert asyncio.run(service.calculate_course_progress("learner", "c1")).total_units == 2


def test_cache_errors_fall_back_to_store() -> None:
    class BrokenCache(InMemoryCacheService):
        async def get(self, key: str) -> str | None:
            raise RedisConnectionError("cache down")

        async def set(self, key: str, value: str, ttl_seconds: int) -> None:
            raise RedisConnectionError("cache down")

    store = InMemoryRowStore()
    service = _service(store, BrokenCache())
    asyncio.run(seed_course(store, "c1", ["u1", "u2"]))
    result = asyncio.run(service.calculate_course_progress("learner", "c1"))
    assert result.total_units == 2


# ---- analytics ----


def test_detailed_progress() -> None:
    store = InMemoryRowStore()
    service = _service(store)
    repo = ProgressRepo(store)
    asyncio.run(seed_course(store, "c1", ["u1", "u2", "u3"]))
    asyncio.run(
        repo.upsert_unit_progress(
            "learner",
            "u1",
            "c1",
            {"completed": True, "video_completed": True, "video_watch_percentage": 100},
        )
    )
    asyncio.run(repo.upsert_unit_progress("learner", "u2", "c1", {"video_watch_percentage": 50}))

    detail = asyncio.run(service.get_detailed_progress("learner", "c1"))
    assert detail["total_units"] == 3
    assert detail["completed_units"] == 1
    assert detail["video_completed_units"] == 1
    assert detail["average_video_progress"] == 75
    assert [u["unit_id"] for u in detail["units"]] == ["u1", "u2"]
