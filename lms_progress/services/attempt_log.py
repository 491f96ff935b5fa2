"""Durable attempt log: write-ahead record of every completion attempt.

An attempt is appended BEFORE its remote write is issued and removed
only after the write is acknowledged.  If the process dies in between,
or the retry queue gives up, the attempt is still here and the next
session for that user replays it.

BOUNDS
------
The log is scoped per user and bounded two ways:
  - entries older than ATTEMPT_LOG_MAX_AGE_HOURS
  - everything beyond the ATTEMPT_LOG_MAX_ENTRIES most recent

Pruned entries are NOT dropped.  They move to the user's needs-support
list, are logged at WARNING and counted in attempt_log_pruned_total, so
an operator can still recover them.  needs_support() lists them and
acknowledge() clears one once it has been dealt with.

STORAGE
-------
  InMemoryAttemptLog  dicts; tests and single-process dev.
  RedisAttemptLog     one hash per user (attempt id → JSON) plus one
                       list per user for needs-support entries:
                         attempts:<user_id>
                         attempts:needs_support:<user_id>
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from lms_progress.core.config import SETTINGS
from lms_progress.core.metrics import ATTEMPT_LOG_PRUNED
from lms_progress.db.redis import redis_pool
from lms_progress.errors import TransientStoreError
from lms_progress.models.completion import CompletionAttempt, now_epoch

logger = logging.getLogger(__name__)


def apply_bounds(
    attempts: list[CompletionAttempt],
    *,
    now: int,
    max_entries: int,
    max_age_seconds: int,
) -> tuple[list[CompletionAttempt], list[tuple[CompletionAttempt, str]]]:
    """Split attempts into (kept, pruned-with-reason), newest kept first."""
    ordered = sorted(attempts, key=lambda a: a.created_at, reverse=True)
    kept: list[CompletionAttempt] = []
    pruned: list[tuple[CompletionAttempt, str]] = []
    for attempt in ordered:
        if now - attempt.created_at > max_age_seconds:
            pruned.append((attempt, "age"))
        elif len(kept) >= max_entries:
            pruned.append((attempt, "overflow"))
        else:
            kept.append(attempt)
    kept.reverse()
    return kept, pruned


def _record_pruned(user_id: str, pruned: list[tuple[CompletionAttempt, str]]) -> None:
    for attempt, reason in pruned:
        ATTEMPT_LOG_PRUNED.labels(reason=reason).inc()
        logger.warning(
            "Attempt %s (%s unit=%s) pruned by %s; moved to needs-support",
            attempt.id,
            attempt.kind,
            attempt.unit_id,
            reason,
            extra={
                "user_id": user_id,
                "attempt_id": attempt.id,
                "unit_id": attempt.unit_id,
            },
        )


@runtime_checkable
class AttemptLog(Protocol):
    async def append(self, attempt: CompletionAttempt) -> None: ...
    async def remove(self, user_id: str, attempt_id: str) -> None: ...
    async def list(self, user_id: str) -> list[CompletionAttempt]: ...
    async def prune(self, user_id: str) -> list[CompletionAttempt]: ...
    async def needs_support(self, user_id: str) -> list[CompletionAttempt]: ...
    async def acknowledge(self, user_id: str, attempt_id: str) -> bool: ...


class InMemoryAttemptLog:
    """In-memory attempt log for tests: no Redis needed."""

    def __init__(
        self,
        *,
        max_entries: int = SETTINGS.attempt_log_max_entries,
        max_age_hours: int = SETTINGS.attempt_log_max_age_hours,
        clock: Callable[[], int] = now_epoch,
    ) -> None:
        self._entries: dict[str, dict[str, CompletionAttempt]] = {}
        self._needs_support: dict[str, list[CompletionAttempt]] = {}
        self._max_entries = max_entries
        self._max_age_seconds = max_age_hours * 3600
        self._clock = clock

    async def append(self, attempt: CompletionAttempt) -> None:
        # Re-appending the same id just records the new retry_count.
        self._entries.setdefault(attempt.user_id, {})[attempt.id] = attempt
        await self.prune(attempt.user_id)

    async def remove(self, user_id: str, attempt_id: str) -> None:
        self._entries.get(user_id, {}).pop(attempt_id, None)

    async def list(self, user_id: str) -> list[CompletionAttempt]:
        return sorted(
            self._entries.get(user_id, {}).values(), key=lambda a: a.created_at
        )

    async def prune(self, user_id: str) -> list[CompletionAttempt]:
        entries = self._entries.get(user_id, {})
        kept, pruned = apply_bounds(
            list(entries.values()),
            now=self._clock(),
            max_entries=self._max_entries,
            max_age_seconds=self._max_age_seconds,
        )
        if not pruned:
            return []
        self._entries[user_id] = {a.id: a for a in kept}
        self._needs_support.setdefault(user_id, []).extend(a for a, _ in pruned)
        _record_pruned(user_id, pruned)
        return [a for a, _ in pruned]

    async def needs_support(self, user_id: str) -> list[CompletionAttempt]:
        return list(self._needs_support.get(user_id, []))

    async def acknowledge(self, user_id: str, attempt_id: str) -> bool:
        entries = self._needs_support.get(user_id, [])
        remaining = [a for a in entries if a.id != attempt_id]
        self._needs_support[user_id] = remaining
        return len(remaining) != len(entries)

    def clear(self) -> None:
        self._entries.clear()
        self._needs_support.clear()


@asynccontextmanager
async def _redis_errors(what: str):
    try:
        yield
    except RedisError as exc:
        raise TransientStoreError(f"attempt log {what} failed: {exc}") from exc


class RedisAttemptLog:
    """Redis-backed attempt log: survives process restarts."""

    _PREFIX = "attempts:"
    _SUPPORT_PREFIX = "attempts:needs_support:"

    def __init__(
        self,
        redis_client,
        *,
        max_entries: int = SETTINGS.attempt_log_max_entries,
        max_age_hours: int = SETTINGS.attempt_log_max_age_hours,
        clock: Callable[[], int] = now_epoch,
    ) -> None:
        self._redis = redis_client
        self._max_entries = max_entries
        self._max_age_seconds = max_age_hours * 3600
        self._clock = clock

    async def append(self, attempt: CompletionAttempt) -> None:
        async with _redis_errors("append"):
            await self._redis.hset(
                f"{self._PREFIX}{attempt.user_id}",
                attempt.id,
                json.dumps(attempt.to_dict()),
            )
        await self.prune(attempt.user_id)

    async def remove(self, user_id: str, attempt_id: str) -> None:
        async with _redis_errors("remove"):
            await self._redis.hdel(f"{self._PREFIX}{user_id}", attempt_id)

    async def list(self, user_id: str) -> list[CompletionAttempt]:
        async with _redis_errors("list"):
            raw = await self._redis.hvals(f"{self._PREFIX}{user_id}")
        attempts = [CompletionAttempt.from_dict(json.loads(v)) for v in raw]
        return sorted(attempts, key=lambda a: a.created_at)

    async def prune(self, user_id: str) -> list[CompletionAttempt]:
        kept, pruned = apply_bounds(
            await self.list(user_id),
            now=self._clock(),
            max_entries=self._max_entries,
            max_age_seconds=self._max_age_seconds,
        )
        if not pruned:
            return []
        async with _redis_errors("prune"):
            pipe = self._redis.pipeline()
            for attempt, _ in pruned:
                pipe.hdel(f"{self._PREFIX}{user_id}", attempt.id)
                pipe.rpush(
                    f"{self._SUPPORT_PREFIX}{user_id}", json.dumps(attempt.to_dict())
                )
            await pipe.execute()
        _record_pruned(user_id, pruned)
        return [a for a, _ in pruned]

    async def needs_support(self, user_id: str) -> list[CompletionAttempt]:
        async with _redis_errors("needs_support"):
            raw = await self._redis.lrange(f"{self._SUPPORT_PREFIX}{user_id}", 0, -1)
        return [CompletionAttempt.from_dict(json.loads(v)) for v in raw]

    async def acknowledge(self, user_id: str, attempt_id: str) -> bool:
        key = f"{self._SUPPORT_PREFIX}{user_id}"
        async with _redis_errors("acknowledge"):
            for raw in await self._redis.lrange(key, 0, -1):
                if json.loads(raw)["id"] == attempt_id:
                    await self._redis.lrem(key, 1, raw)
                    return True
        return False


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    attempt_log: AttemptLog = RedisAttemptLog(redis_pool)
else:
    attempt_log = InMemoryAttemptLog()
