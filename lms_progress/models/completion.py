from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any
from uuid import uuid4


class CompletionKind(StrEnum):
    VIDEO = "video"
    QUIZ = "quiz"
    UNIT = "unit"


def now_epoch() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


@dataclass(frozen=True, slots=True)
class CompletionAttempt:
    """One logical "the learner finished X" event.

    The id is generated once and stays stable across every retry of the
    same attempt.  payload is kind-specific:
      video: {"watch_percentage": int}
      quiz:  {"quiz_id": str, "score": int, "answers": dict}
      unit:  {"method": str}
    """

    id: str
    kind: CompletionKind
    unit_id: str
    course_id: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    retry_count: int = 0
    max_retries: int = 3

    @staticmethod
    def new(
        *,
        kind: CompletionKind,
        unit_id: str,
        course_id: str,
        user_id: str,
        payload: dict[str, Any] | None = None,
        max_retries: int = 3,
        created_at: int | None = None,
    ) -> CompletionAttempt:
        return CompletionAttempt(
            id=str(uuid4()),
            kind=kind,
            unit_id=unit_id,
            course_id=course_id,
            user_id=user_id,
            payload=dict(payload or {}),
            created_at=created_at if created_at is not None else now_epoch(),
            max_retries=max_retries,
        )

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.kind.value, self.unit_id)

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def with_retry_count(self, retry_count: int) -> CompletionAttempt:
        return replace(self, retry_count=retry_count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "unit_id": self.unit_id,
            "course_id": self.course_id,
            "user_id": self.user_id,
            "payload": self.payload,
            "created_at": self.created_at,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> CompletionAttempt:
        return CompletionAttempt(
            id=data["id"],
            kind=CompletionKind(data["kind"]),
            unit_id=data["unit_id"],
            course_id=data["course_id"],
            user_id=data["user_id"],
            payload=dict(data.get("payload") or {}),
            created_at=int(data.get("created_at", 0)),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 3)),
        )


@dataclass(frozen=True, slots=True)
class CompletionRequirements:
    has_video: bool
    has_quiz: bool
    strategy: str  # video_only|quiz_only|video_and_quiz|manual_only


@dataclass(frozen=True, slots=True)
class CompletionStatus:
    unit_completed: bool
    video_completed: bool
    quiz_completed: bool
