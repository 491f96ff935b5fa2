from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Pre-images captured before an admin mutation or repair.

    rows maps a table name to the rows exactly as they were read.
    """

    audit_id: str
    operation: str
    reason: str
    created_at: int
    rows: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @property
    def row_count(self) -> int:
        return sum(len(r) for r in self.rows.values())


@dataclass(frozen=True, slots=True)
class InconsistentRecord:
    user_id: str
    course_id: str
    stored_percentage: int | None
    stored_status: str | None
    expected_percentage: int
    expected_status: str
    reason: str


@dataclass(frozen=True, slots=True)
class DiagnosisReport:
    total_users: int
    inconsistent_users: int
    health_score: float
    sample_records: list[InconsistentRecord]
    inconsistent_records: list[InconsistentRecord]
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RepairResult:
    records_updated: int
    users_affected: int
    audit_id: str | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RowOutcome:
    key: str
    ok: bool
    error: str | None = None


@dataclass(slots=True)
class BulkOperationResult:
    """Aggregate of a safe bulk run.  Each row succeeds or fails on its own."""

    operation: str
    backup_id: str | None
    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    outcomes: list[RowOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.processed > 0 and self.backup_id is not None
