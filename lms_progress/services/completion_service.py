"""Learner-facing completion operations.

mark_video_complete / mark_quiz_complete / mark_unit_complete all follow
the same path:

  1. build a CompletionAttempt with a fresh id
  2. append it to the durable attempt log          (write-ahead)
  3. upsert user_unit_progress within the per-call timeout budget
  4a. success → drop it from the log, recalculate the course, True
  4b. transient failure → hand it to the retry queue, False

A malformed request raises CompletionValidationError before anything is
logged or written.  A transient failure never escapes as an exception.

When the queue gives up on an attempt it stays in the durable log and
in this session's exhausted set, so the learner keeps seeing it until
a manual retry delivers it or a newer completion of the same unit
replaces it.

Writes are safe to repeat: completion timestamps keep the first value
written and watch percentage / quiz score only move up, so a late retry
or a second tab converges on the same row.

One CompletionService exists per learner session (see sessions.py).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from lms_progress.core.config import SETTINGS
from lms_progress.core.metrics import COMPLETION_ATTEMPTS
from lms_progress.errors import (
    CompletionValidationError,
    RetryExhaustedError,
    TransientStoreError,
)
from lms_progress.models.completion import (
    CompletionAttempt,
    CompletionKind,
    CompletionRequirements,
    CompletionStatus,
    now_epoch,
)
from lms_progress.models.course import Unit
from lms_progress.repos.progress_repo import ProgressRepo
from lms_progress.services.attempt_log import AttemptLog
from lms_progress.services.progress_service import ProgressCalculationService
from lms_progress.services.retry_queue import (
    Jitter,
    RetryPolicy,
    RetryQueue,
    Sleep,
    uniform_jitter,
)

logger = logging.getLogger(__name__)

TRIGGERS = ("video_complete", "quiz_complete", "manual")


@dataclass(frozen=True, slots=True)
class RetryReport:
    """Outcome of one manual retry round."""

    pending: int
    delivered: int
    exhausted: int


def analyze_unit(unit: Unit, has_quiz: bool) -> CompletionRequirements:
    """Pick the completion strategy for a unit from what it contains."""
    has_video = unit.has_video
    if has_video and has_quiz:
        strategy = "video_and_quiz"
    elif has_video:
        strategy = "video_only"
    elif has_quiz:
        strategy = "quiz_only"
    else:
        strategy = "manual_only"
    return CompletionRequirements(
        has_video=has_video, has_quiz=has_quiz, strategy=strategy
    )


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CompletionValidationError(f"{name} must be a non-empty string")
    return value


def _require_percentage(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CompletionValidationError(f"{name} must be a number")
    if not 0 <= value <= 100:
        raise CompletionValidationError(f"{name} must be between 0 and 100 (got {value})")
    return int(value)


class CompletionService:
    def __init__(
        self,
        user_id: str,
        *,
        repo: ProgressRepo,
        progress: ProgressCalculationService,
        attempt_log: AttemptLog,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        jitter: Jitter = uniform_jitter,
        timeout_ms: int = SETTINGS.remote_call_timeout_ms,
        video_threshold: int = SETTINGS.video_completion_threshold,
        clock: Callable[[], int] = now_epoch,
        on_queued: Callable[[CompletionAttempt], None] | None = None,
        on_succeeded: Callable[[CompletionAttempt], None] | None = None,
        on_exhausted: Callable[[RetryExhaustedError], None] | None = None,
    ) -> None:
        self._user_id = user_id
        self._repo = repo
        self._progress = progress
        self._log = attempt_log
        self._timeout = timeout_ms / 1000
        self._video_threshold = video_threshold
        self._clock = clock
        self._on_exhausted = on_exhausted
        # dedup_key -> attempt the queue gave up on
        self._exhausted: dict[tuple[str, str], CompletionAttempt] = {}
        self._queue = RetryQueue(
            self._deliver,
            policy=policy,
            sleep=sleep,
            jitter=jitter,
            on_queued=on_queued,
            on_succeeded=on_succeeded,
            on_exhausted=self._record_exhausted,
        )

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def queue(self) -> RetryQueue:
        return self._queue

    @property
    def failure_queue_count(self) -> int:
        return self._queue.failure_queue_count

    @property
    def has_failures(self) -> bool:
        return self._queue.has_failures or bool(self._exhausted)

    @property
    def idle(self) -> bool:
        """Nothing queued and nothing waiting on the learner."""
        return not self.has_failures

    def exhausted_attempts(self) -> list[CompletionAttempt]:
        return sorted(self._exhausted.values(), key=lambda a: a.created_at)

    # --- lifecycle ---

    async def start(self) -> int:
        """Start the retry queue and replay attempts left in the durable log.

        Returns the number of attempts replayed.
        """
        self._queue.start()
        try:
            await self._log.prune(self._user_id)
            pending = await self._log.list(self._user_id)
        except TransientStoreError as exc:
            logger.warning(
                "Could not read attempt log on start: %s",
                exc,
                extra={"user_id": self._user_id},
            )
            return 0

        for attempt in pending:
            await self._enqueue(attempt)
        if pending:
            logger.info(
                "Replayed %d pending completion(s) from the attempt log",
                len(pending),
                extra={"user_id": self._user_id},
            )
        return len(pending)

    async def dispose(self) -> None:
        await self._queue.dispose()

    # --- completion operations ---

    async def mark_video_complete(
        self, unit_id: str, course_id: str, watch_percentage: int
    ) -> bool:
        try:
            _require_text("unit_id", unit_id)
            _require_text("course_id", course_id)
            watched = _require_percentage("watch_percentage", watch_percentage)
        except CompletionValidationError:
            COMPLETION_ATTEMPTS.labels(kind=CompletionKind.VIDEO, result="rejected").inc()
            raise
        return await self._submit(
            CompletionKind.VIDEO, unit_id, course_id, {"watch_percentage": watched}
        )

    async def mark_quiz_complete(
        self,
        quiz_id: str,
        unit_id: str,
        course_id: str,
        score: int,
        answers: dict[str, Any] | None = None,
    ) -> bool:
        try:
            _require_text("quiz_id", quiz_id)
            _require_text("unit_id", unit_id)
            _require_text("course_id", course_id)
            score = _require_percentage("score", score)
            if answers is not None and not isinstance(answers, dict):
                raise CompletionValidationError("answers must be an object")
        except CompletionValidationError:
            COMPLETION_ATTEMPTS.labels(kind=CompletionKind.QUIZ, result="rejected").inc()
            raise
        return await self._submit(
            CompletionKind.QUIZ,
            unit_id,
            course_id,
            {"quiz_id": quiz_id, "score": score, "answers": dict(answers or {})},
        )

    async def mark_unit_complete(
        self, unit_id: str, course_id: str, method: str = "manual"
    ) -> bool:
        try:
            _require_text("unit_id", unit_id)
            _require_text("course_id", course_id)
            _require_text("method", method)
        except CompletionValidationError:
            COMPLETION_ATTEMPTS.labels(kind=CompletionKind.UNIT, result="rejected").inc()
            raise
        return await self._submit(
            CompletionKind.UNIT, unit_id, course_id, {"method": method}
        )

    async def retry_failed_completions(self) -> RetryReport:
        """Run one retry round now, skipping any remaining backoff.

        Attempts the queue already gave up on are re-armed with a fresh
        retry budget first.  The report separates what landed from what
        ran out of retries during this round.
        """
        for attempt in list(self._exhausted.values()):
            del self._exhausted[attempt.dedup_key]
            rearmed = attempt.with_retry_count(0)
            await self._log_append(rearmed)
            await self._enqueue(rearmed)

        before = self._queue.failure_queue_count
        pending = await self._queue.retry_all_now()
        gave_up = len(self._exhausted)
        return RetryReport(
            pending=pending,
            delivered=max(before - pending - gave_up, 0),
            exhausted=gave_up,
        )

    async def needs_support(self) -> list[CompletionAttempt]:
        return await self._log.needs_support(self._user_id)

    # --- strategy evaluation ---

    async def check_completion_status(
        self, unit_id: str, course_id: str
    ) -> CompletionStatus | None:
        try:
            row = await self._repo.get_unit_progress(self._user_id, unit_id, course_id)
        except TransientStoreError as exc:
            logger.warning(
                "Could not read completion status: %s",
                exc,
                extra={"user_id": self._user_id, "unit_id": unit_id},
            )
            return None
        if row is None:
            return CompletionStatus(
                unit_completed=False, video_completed=False, quiz_completed=False
            )
        return CompletionStatus(
            unit_completed=row.completed,
            video_completed=row.video_completed,
            quiz_completed=row.quiz_completed,
        )

    async def evaluate_unit(
        self, unit_id: str, course_id: str, has_quiz: bool, trigger: str
    ) -> bool:
        """Load ``unit_id`` and run evaluate_and_complete_unit on it."""
        _require_text("unit_id", unit_id)
        _require_text("course_id", course_id)
        try:
            unit = await self._repo.get_unit(unit_id)
            owner = await self._repo.get_unit_course_id(unit_id)
        except TransientStoreError as exc:
            logger.warning(
                "Could not load unit for evaluation: %s",
                exc,
                extra={"user_id": self._user_id, "unit_id": unit_id},
            )
            return False
        if unit is None or owner != course_id:
            raise CompletionValidationError(
                f"unit {unit_id} does not belong to course {course_id}"
            )
        return await self.evaluate_and_complete_unit(unit, course_id, has_quiz, trigger)

    async def evaluate_and_complete_unit(
        self, unit: Unit, course_id: str, has_quiz: bool, trigger: str
    ) -> bool:
        """Complete ``unit`` if its strategy is now satisfied.

        Returns True only when this call completed the unit.
        """
        if trigger not in TRIGGERS:
            raise CompletionValidationError(
                f"trigger must be one of {', '.join(TRIGGERS)} (got {trigger!r})"
            )
        requirements = analyze_unit(unit, has_quiz)
        status = await self.check_completion_status(unit.id, course_id)
        if status is None:
            return False

        video_done = status.video_completed or trigger == "video_complete"
        quiz_done = status.quiz_completed or trigger == "quiz_complete"
        if requirements.strategy == "video_only":
            should_complete = video_done
        elif requirements.strategy == "quiz_only":
            should_complete = quiz_done
        elif requirements.strategy == "video_and_quiz":
            should_complete = video_done and quiz_done
        else:
            should_complete = trigger == "manual"

        logger.debug(
            "Evaluated unit %s: strategy=%s trigger=%s complete=%s",
            unit.id,
            requirements.strategy,
            trigger,
            should_complete,
        )
        if should_complete and not status.unit_completed:
            return await self.mark_unit_complete(unit.id, course_id, f"auto_{trigger}")
        return False

    # --- internals ---

    async def _submit(
        self,
        kind: CompletionKind,
        unit_id: str,
        course_id: str,
        payload: dict[str, Any],
    ) -> bool:
        attempt = CompletionAttempt.new(
            kind=kind,
            unit_id=unit_id,
            course_id=course_id,
            user_id=self._user_id,
            payload=payload,
            max_retries=self._queue.policy.max_retries,
            created_at=self._clock(),
        )
        stale = self._exhausted.pop(attempt.dedup_key, None)
        if stale is not None:
            # The newer completion of the same unit replaces the one given up on.
            await self._log_remove(stale)
        await self._log_append(attempt)

        try:
            await self._write(attempt)
        except (TransientStoreError, asyncio.TimeoutError) as exc:
            COMPLETION_ATTEMPTS.labels(kind=kind, result="queued").inc()
            logger.warning(
                "%s completion for unit=%s failed, queued for retry: %s",
                kind,
                unit_id,
                str(exc) or "timed out",
                extra={
                    "user_id": self._user_id,
                    "course_id": course_id,
                    "unit_id": unit_id,
                    "attempt_id": attempt.id,
                },
            )
            await self._enqueue(attempt)
            return False

        COMPLETION_ATTEMPTS.labels(kind=kind, result="succeeded").inc()
        logger.info(
            "%s completion recorded for unit=%s",
            kind,
            unit_id,
            extra={
                "user_id": self._user_id,
                "course_id": course_id,
                "unit_id": unit_id,
                "attempt_id": attempt.id,
            },
        )
        await self._after_write(attempt)
        return True

    async def _enqueue(self, attempt: CompletionAttempt) -> None:
        superseded = self._queue.enqueue(attempt)
        if superseded is not None and superseded.id != attempt.id:
            await self._log_remove(superseded)
        entry = self._queue.get(*attempt.dedup_key)
        if entry is not None and entry.attempt.retry_count != attempt.retry_count:
            await self._log_append(entry.attempt)

    def _record_exhausted(self, error: RetryExhaustedError) -> None:
        attempt = error.attempt
        self._exhausted[attempt.dedup_key] = attempt
        if self._on_exhausted is not None:
            self._on_exhausted(error)

    async def _deliver(self, attempt: CompletionAttempt) -> None:
        """Retry-queue executor: persist the new retry_count, then write."""
        await self._log_append(attempt)
        await self._write(attempt)
        await self._after_write(attempt)

    async def _write(self, attempt: CompletionAttempt) -> None:
        fields = self._unit_fields(attempt)
        await asyncio.wait_for(
            self._repo.upsert_unit_progress(
                attempt.user_id, attempt.unit_id, attempt.course_id, fields
            ),
            timeout=self._timeout,
        )

    def _unit_fields(self, attempt: CompletionAttempt) -> dict[str, Any]:
        # Completion time is when the learner finished, not when a retry landed.
        completed_at = attempt.created_at
        fields: dict[str, Any] = {"updated_at": self._clock()}
        if attempt.kind == CompletionKind.VIDEO:
            watched = attempt.payload["watch_percentage"]
            fields["video_watch_percentage"] = watched
            if watched >= self._video_threshold:
                fields["video_completed"] = True
                fields["video_completed_at"] = completed_at
        elif attempt.kind == CompletionKind.QUIZ:
            fields["quiz_completed"] = True
            fields["quiz_completed_at"] = completed_at
            fields["quiz_score"] = attempt.payload["score"]
        else:
            fields["completed"] = True
            fields["completed_at"] = completed_at
            fields["completion_method"] = attempt.payload["method"]
        return fields

    async def _after_write(self, attempt: CompletionAttempt) -> None:
        await self._log_remove(attempt)
        try:
            await asyncio.wait_for(
                self._progress.calculate_course_progress(
                    attempt.user_id, attempt.course_id
                ),
                timeout=self._timeout,
            )
        except (TransientStoreError, asyncio.TimeoutError) as exc:
            # The unit row is written; integrity repair reconciles the rollup.
            logger.warning(
                "Progress recalculation after completion failed: %s",
                str(exc) or "timed out",
                extra={"user_id": attempt.user_id, "course_id": attempt.course_id},
            )

    async def _log_append(self, attempt: CompletionAttempt) -> None:
        try:
            await self._log.append(attempt)
        except TransientStoreError as exc:
            logger.warning(
                "Attempt log write failed; attempt %s is held in memory only: %s",
                attempt.id,
                exc,
                extra={"user_id": attempt.user_id, "attempt_id": attempt.id},
            )

    async def _log_remove(self, attempt: CompletionAttempt) -> None:
        try:
            await self._log.remove(attempt.user_id, attempt.id)
        except TransientStoreError as exc:
            logger.warning(
                "Attempt log cleanup failed for %s: %s",
                attempt.id,
                exc,
                extra={"user_id": attempt.user_id, "attempt_id": attempt.id},
            )
