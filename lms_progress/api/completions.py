"""Completion endpoints: the learner-facing side of the reliability layer.

Every POST answers 200 whether the write landed or was queued:

  {"completed": true,  "queued": false}   written now
  {"completed": false, "queued": true}    kept, will be retried

so the UI can show "Completed!" or "we'll keep trying" without ever
waiting on a retry.  A malformed body is 422 and is never queued.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from lms_progress.api.dependencies import get_completion_session
from lms_progress.models.completion import CompletionAttempt
from lms_progress.services.completion_service import CompletionService

router = APIRouter(prefix="/v1/completions", tags=["completions"])

Session = Annotated[CompletionService, Depends(get_completion_session)]


class VideoCompletionIn(BaseModel):
    unit_id: str
    course_id: str
    watch_percentage: int = 100


class QuizCompletionIn(BaseModel):
    quiz_id: str
    unit_id: str
    course_id: str
    score: int
    answers: dict[str, Any] = Field(default_factory=dict)


class UnitCompletionIn(BaseModel):
    unit_id: str
    course_id: str
    method: str = "manual"


class EvaluateIn(BaseModel):
    unit_id: str
    course_id: str
    has_quiz: bool = False
    trigger: str


class CompletionOut(BaseModel):
    completed: bool
    queued: bool


class EvaluateOut(BaseModel):
    completed: bool


class RetryOut(BaseModel):
    pending: int
    delivered: int
    exhausted: int


class QueuedAttemptOut(BaseModel):
    id: str
    kind: str
    unit_id: str
    course_id: str
    created_at: int
    retry_count: int


class FailuresOut(BaseModel):
    failure_queue_count: int
    has_failures: bool
    exhausted: list[QueuedAttemptOut]
    needs_support: list[QueuedAttemptOut]


def _outcome(completed: bool) -> CompletionOut:
    return CompletionOut(completed=completed, queued=not completed)


def _attempt_out(a: CompletionAttempt) -> QueuedAttemptOut:
    return QueuedAttemptOut(
        id=a.id,
        kind=a.kind.value,
        unit_id=a.unit_id,
        course_id=a.course_id,
        created_at=a.created_at,
        retry_count=a.retry_count,
    )


@router.post("/video", response_model=CompletionOut)
async def complete_video(body: VideoCompletionIn, session: Session) -> CompletionOut:
    return _outcome(
        await session.mark_video_complete(
            body.unit_id, body.course_id, body.watch_percentage
        )
    )


@router.post("/quiz", response_model=CompletionOut)
async def complete_quiz(body: QuizCompletionIn, session: Session) -> CompletionOut:
    return _outcome(
        await session.mark_quiz_complete(
            body.quiz_id, body.unit_id, body.course_id, body.score, body.answers
        )
    )


@router.post("/unit", response_model=CompletionOut)
async def complete_unit(body: UnitCompletionIn, session: Session) -> CompletionOut:
    return _outcome(
        await session.mark_unit_complete(body.unit_id, body.course_id, body.method)
    )


@router.post("/evaluate", response_model=EvaluateOut)
async def evaluate_unit(body: EvaluateIn, session: Session) -> EvaluateOut:
    """Complete the unit if what the learner has done now satisfies it."""
    return EvaluateOut(
        completed=await session.evaluate_unit(
            body.unit_id, body.course_id, body.has_quiz, body.trigger
        )
    )


@router.post("/retry", response_model=RetryOut)
async def retry_now(session: Session) -> RetryOut:
    """The "retry now" button.

    Skips backoff for everything queued and gives exhausted attempts a
    fresh budget.  ``exhausted`` > 0 means the learner should refresh.
    """
    report = await session.retry_failed_completions()
    return RetryOut(
        pending=report.pending,
        delivered=report.delivered,
        exhausted=report.exhausted,
    )


@router.get("/failures", response_model=FailuresOut)
async def failures(session: Session) -> FailuresOut:
    needs_support = await session.needs_support()
    return FailuresOut(
        failure_queue_count=session.failure_queue_count,
        has_failures=session.has_failures,
        exhausted=[_attempt_out(a) for a in session.exhausted_attempts()],
        needs_support=[_attempt_out(a) for a in needs_support],
    )
