"""Course progress endpoints.

GET  /v1/progress/{course_id}            recalculate and return one course
POST /v1/progress/batch                  same for many courses at once
GET  /v1/progress/{course_id}/detail     per-unit breakdown, read-only

Reading progress always re-derives it from the unit rows and writes the
rollup back, so opening the dashboard also heals any drift for the
learner looking at it.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from lms_progress.api.dependencies import require_user_id
from lms_progress.models.progress import ProgressResult
from lms_progress.services.progress_service import progress_service

router = APIRouter(prefix="/v1/progress", tags=["progress"])

UserId = Annotated[str, Depends(require_user_id)]


class ProgressOut(BaseModel):
    percentage: int
    status: str
    total_units: int
    completed_units: int


class BatchProgressIn(BaseModel):
    course_ids: list[str] = Field(min_length=1, max_length=100)


def _out(result: ProgressResult) -> ProgressOut:
    return ProgressOut(
        percentage=result.percentage,
        status=result.status.value,
        total_units=result.total_units,
        completed_units=result.completed_units,
    )


@router.post("/batch", response_model=dict[str, ProgressOut])
async def batch_progress(body: BatchProgressIn, user_id: UserId) -> dict[str, ProgressOut]:
    results = await progress_service.calculate_batch_progress(user_id, body.course_ids)
    return {course_id: _out(r) for course_id, r in results.items()}


@router.get("/{course_id}", response_model=ProgressOut)
async def course_progress(course_id: str, user_id: UserId) -> ProgressOut:
    return _out(await progress_service.calculate_course_progress(user_id, course_id))


@router.get("/{course_id}/detail")
async def course_progress_detail(course_id: str, user_id: UserId) -> dict[str, Any]:
    return await progress_service.get_detailed_progress(user_id, course_id)
