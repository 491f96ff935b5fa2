from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from lms_progress.api.dependencies import require_user_id
from lms_progress.models.audit import BulkOperationResult
from lms_progress.services.attempt_log import attempt_log
from lms_progress.services.bulk_operations import bulk_operations
from lms_progress.services.integrity_service import integrity_service
from lms_progress.services.progress_service import progress_service
from lms_progress.services.snapshot_service import snapshot_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])

AdminId = Annotated[str, Depends(require_user_id)]


class RepairIn(BaseModel):
    reason: str = Field(min_length=1)


class UserCourse(BaseModel):
    user_id: str
    course_id: str


class UserUnit(BaseModel):
    user_id: str
    unit_id: str
    course_id: str


class BulkAssignIn(BaseModel):
    user_ids: list[str] = Field(min_length=1)
    course_id: str


class BulkResetIn(BaseModel):
    pairs: list[UserCourse] = Field(min_length=1)
    reason: str = "Administrative reset"


class BulkCompleteIn(BaseModel):
    pairs: list[UserCourse] = Field(min_length=1)
    completed_at: int | None = None


class UnitsCompleteIn(BaseModel):
    units: list[UserUnit] = Field(min_length=1)
    reason: str = Field(min_length=1)


class CacheInvalidateIn(BaseModel):
    course_id: str | None = None


def _bulk_out(result: BulkOperationResult) -> dict[str, Any]:
    return {**asdict(result), "success": result.success}


# --- integrity ---


@router.get("/integrity/diagnose")
async def diagnose(admin_id: AdminId) -> dict[str, Any]:
    logger.info("Integrity diagnosis requested by user=%s", admin_id)
    report = await integrity_service.diagnose_inconsistencies()
    return asdict(report)


@router.get("/integrity/validate")
async def validate(admin_id: AdminId) -> dict[str, Any]:
    return await integrity_service.validate_progress_integrity()


@router.get("/integrity/summary")
async def summary(admin_id: AdminId) -> dict[str, Any]:
    return await integrity_service.get_integrity_summary()


@router.post("/integrity/repair")
async def repair(body: RepairIn, admin_id: AdminId) -> dict[str, Any]:
    logger.info("Integrity repair requested by user=%s: %s", admin_id, body.reason)
    return asdict(await integrity_service.repair_all(body.reason))


# --- snapshots ---


@router.get("/snapshots/{audit_id}")
async def get_snapshot(audit_id: str, admin_id: AdminId) -> dict[str, Any]:
    snapshot = await snapshot_service.get(audit_id)
    return {**asdict(snapshot), "row_count": snapshot.row_count}


@router.post("/snapshots/{audit_id}/restore")
async def restore_snapshot(audit_id: str, admin_id: AdminId) -> dict[str, Any]:
    logger.info("Snapshot %s restore requested by user=%s", audit_id, admin_id)
    restored = await snapshot_service.restore(audit_id)
    return {"audit_id": audit_id, "restored": restored}


# --- bulk operations ---


@router.post("/bulk/assign")
async def bulk_assign(body: BulkAssignIn, admin_id: AdminId) -> dict[str, Any]:
    result = await bulk_operations.bulk_assign_course(
        body.user_ids, body.course_id, assigned_by=admin_id
    )
    return _bulk_out(result)


@router.post("/bulk/reset")
async def bulk_reset(body: BulkResetIn, admin_id: AdminId) -> dict[str, Any]:
    result = await bulk_operations.bulk_reset_progress(
        [(p.user_id, p.course_id) for p in body.pairs], body.reason
    )
    return _bulk_out(result)


@router.post("/bulk/complete")
async def bulk_complete(body: BulkCompleteIn, admin_id: AdminId) -> dict[str, Any]:
    result = await bulk_operations.bulk_mark_course_completed(
        [(p.user_id, p.course_id) for p in body.pairs], body.completed_at
    )
    return _bulk_out(result)


@router.post("/units/complete")
async def units_complete(body: UnitsCompleteIn, admin_id: AdminId) -> dict[str, Any]:
    result = await bulk_operations.bulk_admin_mark_units_complete(
        [(u.user_id, u.unit_id, u.course_id) for u in body.units], body.reason
    )
    return _bulk_out(result)


@router.post("/units/validate")
async def units_validate(body: UserUnit, admin_id: AdminId) -> dict[str, Any]:
    return await bulk_operations.validate_admin_unit_completion(
        body.user_id, body.unit_id, body.course_id
    )


# --- support ---


@router.get("/users/{user_id}/needs-support")
async def needs_support(user_id: str, admin_id: AdminId) -> list[dict[str, Any]]:
    return [a.to_dict() for a in await attempt_log.needs_support(user_id)]


@router.delete(
    "/users/{user_id}/needs-support/{attempt_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def acknowledge_needs_support(
    user_id: str, attempt_id: str, admin_id: AdminId
) -> None:
    if not await attempt_log.acknowledge(user_id, attempt_id):
        raise HTTPException(status_code=404, detail="Attempt not found")
    logger.info(
        "Needs-support attempt %s acknowledged by user=%s",
        attempt_id,
        admin_id,
        extra={"attempt_id": attempt_id},
    )


@router.post("/cache/invalidate")
async def invalidate_cache(body: CacheInvalidateIn, admin_id: AdminId) -> dict[str, Any]:
    await progress_service.invalidate_course_cache(body.course_id)
    return {"invalidated": body.course_id or "all"}
