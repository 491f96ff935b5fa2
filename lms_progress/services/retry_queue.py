"""Retry queue for completion writes that failed on the first try.

LIFECYCLE OF AN ENTRY
----------------------
  PENDING ──timer──▶ IN_FLIGHT ──ok──────▶ SUCCEEDED   (removed)
                        │
                        ├─fail, retries left─▶ RESCHEDULED ──timer──▶ IN_FLIGHT
                        │
                        └─fail, none left───▶ EXHAUSTED  (removed)

Every entry owns exactly one asyncio task.  That task sleeps, runs the
write, and either finishes or loops; a new retry is never scheduled
until the previous write has returned, so two timers can never race on
the same unit.

BACKOFF
-------
  delay = min(initial * multiplier ** retry_count, max_delay) + jitter

retry_count is the number of retries already made, so with the
defaults (1s, x2, 30s cap, 3 retries) an always-failing attempt waits
roughly 1s, 2s, 4s and is then exhausted.  Jitter is uniform in
[0, max_jitter] and keeps every open session from retrying in lockstep
after a shared outage.

DEDUPLICATION
-------------
Entries are keyed by (kind, unit_id).  Enqueuing an attempt whose key is
already queued does not start a second timer: the newer attempt replaces
the queued payload and carries the old retry_count forward plus one.
If the merge lands while the old payload is in flight, the entry's
generation moves on and a successful write is followed by one more run
so the newer payload is also delivered.

EXHAUSTION
----------
The entry leaves the queue and on_exhausted receives a
RetryExhaustedError.  The queue never touches the durable attempt log;
the owner decides what stays there (see completion_service.py).

sleep and jitter are injectable so tests never wait on a real clock.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from lms_progress.core.config import SETTINGS, RetrySettings
from lms_progress.core.metrics import COMPLETION_RETRIES, RETRY_DELAY, RETRY_QUEUE_DEPTH
from lms_progress.errors import RetryExhaustedError, TransientStoreError
from lms_progress.models.completion import CompletionAttempt

logger = logging.getLogger(__name__)

Executor = Callable[[CompletionAttempt], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]
Jitter = Callable[[float], float]


class EntryState(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    RESCHEDULED = "rescheduled"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    initial_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 30000
    max_jitter_ms: int = 1000
    max_retries: int = 3

    @staticmethod
    def from_settings(settings: RetrySettings) -> RetryPolicy:
        return RetryPolicy(
            initial_delay_ms=settings.initial_delay_ms,
            multiplier=settings.multiplier,
            max_delay_ms=settings.max_delay_ms,
            max_jitter_ms=settings.max_jitter_ms,
            max_retries=settings.max_retries,
        )

    def base_delay_ms(self, retry_count: int) -> float:
        return min(
            self.initial_delay_ms * self.multiplier**retry_count, self.max_delay_ms
        )


def uniform_jitter(max_jitter_ms: float) -> float:
    return random.uniform(0, max_jitter_ms)


def compute_delay(
    policy: RetryPolicy, retry_count: int, jitter: Jitter = uniform_jitter
) -> float:
    """Seconds to wait before the retry numbered ``retry_count + 1``."""
    jitter_ms = min(max(jitter(policy.max_jitter_ms), 0), policy.max_jitter_ms)
    return (policy.base_delay_ms(retry_count) + jitter_ms) / 1000


@dataclass(slots=True)
class RetryQueueEntry:
    attempt: CompletionAttempt
    state: EntryState = EntryState.PENDING
    generation: int = 0
    task: asyncio.Task | None = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    round_done: asyncio.Event = field(default_factory=asyncio.Event)


class RetryQueue:
    def __init__(
        self,
        executor: Executor,
        *,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        jitter: Jitter = uniform_jitter,
        on_queued: Callable[[CompletionAttempt], None] | None = None,
        on_succeeded: Callable[[CompletionAttempt], None] | None = None,
        on_exhausted: Callable[[RetryExhaustedError], None] | None = None,
    ) -> None:
        self._execute = executor
        self._policy = policy or RetryPolicy.from_settings(SETTINGS.retry)
        self._sleep = sleep
        self._jitter = jitter
        self._on_queued = on_queued
        self._on_succeeded = on_succeeded
        self._on_exhausted = on_exhausted
        self._entries: dict[tuple[str, str], RetryQueueEntry] = {}
        self._running = False

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._running

    @property
    def failure_queue_count(self) -> int:
        return len(self._entries)

    @property
    def has_failures(self) -> bool:
        return bool(self._entries)

    def entries(self) -> list[RetryQueueEntry]:
        return list(self._entries.values())

    def get(self, kind: str, unit_id: str) -> RetryQueueEntry | None:
        return self._entries.get((kind, unit_id))

    def start(self) -> None:
        self._running = True

    async def dispose(self) -> None:
        """Cancel every timer.  Attempts stay wherever their owner logged them."""
        self._running = False
        entries = list(self._entries.values())
        self._entries.clear()
        RETRY_QUEUE_DEPTH.dec(len(entries))
        tasks = [e.task for e in entries if e.task is not None]
        for task in tasks:
            task.cancel()
        for entry in entries:
            entry.round_done.set()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def enqueue(self, attempt: CompletionAttempt) -> CompletionAttempt | None:
        """Queue ``attempt`` for retry.

        Returns the attempt it superseded when an entry with the same
        (kind, unit_id) was already queued, otherwise None.
        """
        if not self._running:
            raise RuntimeError("retry queue is not running")

        key = attempt.dedup_key
        entry = self._entries.get(key)
        if entry is not None:
            superseded = entry.attempt
            entry.attempt = attempt.with_retry_count(superseded.retry_count + 1)
            entry.generation += 1
            logger.info(
                "Merged %s attempt for unit=%s into queued entry (retry_count=%d)",
                attempt.kind,
                attempt.unit_id,
                entry.attempt.retry_count,
                extra={"attempt_id": attempt.id, "unit_id": attempt.unit_id},
            )
            self._notify(self._on_queued, entry.attempt)
            return superseded

        entry = RetryQueueEntry(attempt=attempt)
        self._entries[key] = entry
        RETRY_QUEUE_DEPTH.inc()
        entry.task = asyncio.create_task(self._run(entry))
        logger.warning(
            "Queued %s completion for unit=%s for retry",
            attempt.kind,
            attempt.unit_id,
            extra={
                "user_id": attempt.user_id,
                "attempt_id": attempt.id,
                "unit_id": attempt.unit_id,
            },
        )
        self._notify(self._on_queued, attempt)
        return None

    async def retry_all_now(self) -> int:
        """Skip the remaining backoff for every entry and wait for one round.

        Returns how many entries are still queued afterwards.
        """
        waiting = []
        for entry in list(self._entries.values()):
            entry.wake.set()
            waiting.append(entry.round_done.wait())
        if waiting:
            await asyncio.gather(*waiting)
        return self.failure_queue_count

    async def _wait(self, entry: RetryQueueEntry, delay: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waker = asyncio.ensure_future(entry.wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waker.cancel()
        entry.wake.clear()

    async def _run(self, entry: RetryQueueEntry) -> None:
        while True:
            delay = compute_delay(self._policy, entry.attempt.retry_count, self._jitter)
            RETRY_DELAY.observe(delay)
            entry.round_done.clear()
            await self._wait(entry, delay)

            entry.state = EntryState.IN_FLIGHT
            generation = entry.generation
            entry.attempt = entry.attempt.with_retry_count(entry.attempt.retry_count + 1)
            attempt = entry.attempt

            try:
                await self._execute(attempt)
            except (TransientStoreError, asyncio.TimeoutError) as exc:
                if entry.attempt.exhausted:
                    self._exhaust(entry)
                    return
                entry.state = EntryState.RESCHEDULED
                COMPLETION_RETRIES.labels(kind=attempt.kind, outcome="rescheduled").inc()
                logger.warning(
                    "Retry %d/%d of %s completion for unit=%s failed: %s",
                    attempt.retry_count,
                    attempt.max_retries,
                    attempt.kind,
                    attempt.unit_id,
                    exc,
                    extra={"attempt_id": attempt.id, "unit_id": attempt.unit_id},
                )
                entry.round_done.set()
                continue
            except Exception:
                # Not a transport failure; another retry cannot fix it.
                logger.exception(
                    "Retry of %s completion for unit=%s raised a non-transient error",
                    attempt.kind,
                    attempt.unit_id,
                    extra={"attempt_id": attempt.id, "unit_id": attempt.unit_id},
                )
                self._exhaust(entry)
                return

            if entry.generation != generation:
                # A newer payload was merged while this one was in flight.
                entry.state = EntryState.RESCHEDULED
                COMPLETION_RETRIES.labels(kind=attempt.kind, outcome="rescheduled").inc()
                entry.round_done.set()
                continue

            entry.state = EntryState.SUCCEEDED
            self._remove(entry)
            COMPLETION_RETRIES.labels(kind=attempt.kind, outcome="succeeded").inc()
            logger.info(
                "Retry %d of %s completion for unit=%s succeeded",
                attempt.retry_count,
                attempt.kind,
                attempt.unit_id,
                extra={"attempt_id": attempt.id, "unit_id": attempt.unit_id},
            )
            entry.round_done.set()
            self._notify(self._on_succeeded, attempt)
            return

    def _exhaust(self, entry: RetryQueueEntry) -> None:
        attempt = entry.attempt
        entry.state = EntryState.EXHAUSTED
        self._remove(entry)
        COMPLETION_RETRIES.labels(kind=attempt.kind, outcome="exhausted").inc()
        logger.error(
            "Giving up on %s completion for unit=%s after %d retries",
            attempt.kind,
            attempt.unit_id,
            attempt.retry_count,
            extra={
                "user_id": attempt.user_id,
                "attempt_id": attempt.id,
                "unit_id": attempt.unit_id,
            },
        )
        entry.round_done.set()
        self._notify(self._on_exhausted, RetryExhaustedError(attempt))

    def _remove(self, entry: RetryQueueEntry) -> None:
        if self._entries.get(entry.attempt.dedup_key) is entry:
            del self._entries[entry.attempt.dedup_key]
            RETRY_QUEUE_DEPTH.dec()

    @staticmethod
    def _notify(callback, arg) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception:
            logger.exception("Retry queue listener failed")
