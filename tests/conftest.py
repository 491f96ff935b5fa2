from __future__ import annotations

import asyncio
import sys
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import lms_progress` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lms_progress.errors import TransientStoreError  # noqa: E402
from lms_progress.main import app  # noqa: E402
from lms_progress.repos.progress_repo import LESSONS, UNITS  # noqa: E402
from lms_progress.repos.row_store import InMemoryRowStore, row_store  # noqa: E402
from lms_progress.services.attempt_log import attempt_log  # noqa: E402
from lms_progress.services.cache import cache_service  # noqa: E402
from lms_progress.services.sessions import session_registry  # noqa: E402


@pytest.fixture(autouse=True)
def reset_row_store() -> None:
    """Clear every table between tests."""
    if hasattr(row_store, "clear"):
        row_store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    """Clear cached course structures between tests."""
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_attempt_log() -> None:
    """Clear pending and needs-support attempts between tests."""
    if hasattr(attempt_log, "clear"):
        attempt_log.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_sessions() -> None:
    """Forget learner sessions; the client fixture disposes their timers."""
    session_registry._sessions.clear()
    session_registry._leases.clear()


@pytest.fixture
def client() -> Iterator[TestClient]:
    # The context manager keeps one event loop alive for the whole test,
    # so retry timers created by one request are still there for the next.
    with TestClient(app) as c:
        yield c


def user_headers(user_id: str = "learner-1") -> dict[str, str]:
    return {"X-User-Id": user_id}


# ---------------------------------------------------------------------------
# Course structure helpers
# ---------------------------------------------------------------------------


async def seed_course(
    store: InMemoryRowStore | Any,
    course_id: str,
    unit_ids: Sequence[str],
    *,
    video_unit_ids: Sequence[str] = (),
) -> None:
    """One lesson holding ``unit_ids``; units in video_unit_ids get a video."""
    lesson_id = f"{course_id}-lesson-1"
    await store.upsert(
        LESSONS, {"id": lesson_id, "course_id": course_id, "position": 0}, ("id",)
    )
    for position, unit_id in enumerate(unit_ids):
        await store.upsert(
            UNITS,
            {
                "id": unit_id,
                "lesson_id": lesson_id,
                "title": unit_id,
                "video_url": (
                    f"https://videos.example/{unit_id}.mp4"
                    if unit_id in video_unit_ids
                    else None
                ),
                "position": position,
            },
            ("id",),
        )


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FlakyRowStore(InMemoryRowStore):
    """In-memory store whose upserts fail with TransientStoreError.

    ``fail_upserts`` counts down on every upsert into ``tables`` (all
    tables when None); while it is positive the call fails without
    writing.
    """

    def __init__(self, fail_upserts: int = 0, tables: set[str] | None = None) -> None:
        super().__init__()
        self.fail_upserts = fail_upserts
        self.tables = tables
        self.upsert_calls = 0

    async def upsert(
        self,
        table: str,
        row: Mapping[str, Any],
        conflict_key: Sequence[str],
        merge: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        if self.tables is None or table in self.tables:
            self.upsert_calls += 1
            if self.fail_upserts > 0:
                self.fail_upserts -= 1
                raise TransientStoreError(f"upsert {table} failed: connection reset")
        return await super().upsert(table, row, conflict_key, merge)


async def no_sleep(_delay: float) -> None:
    """Injected in place of asyncio.sleep so backoff never waits."""
    await asyncio.sleep(0)


def no_jitter(_max_jitter_ms: float) -> float:
    return 0.0
