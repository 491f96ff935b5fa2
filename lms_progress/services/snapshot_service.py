"""Pre-image snapshots for admin mutations and integrity repairs.

Before any repair or bulk edit touches a row, the row is copied into
progress_snapshots under an audit id.  get() returns everything stored
for an audit id; restore() upserts every captured row back over its
current version.  Rows created after the snapshot are not removed.

Every snapshot also stores one marker row, so an audit id whose
operation found nothing to back up still resolves.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from typing import Any
from uuid import uuid4

from lms_progress.errors import SnapshotNotFoundError
from lms_progress.models.audit import ProgressSnapshot
from lms_progress.models.completion import now_epoch
from lms_progress.repos.progress_repo import (
    ASSIGNMENTS,
    COURSE_PROGRESS,
    TABLE_KEYS,
    UNIT_PROGRESS,
)
from lms_progress.repos.row_store import RowStore, row_store

logger = logging.getLogger(__name__)

SNAPSHOTS = "progress_snapshots"
_MARKER = "_snapshot"


class SnapshotService:
    def __init__(
        self, store: RowStore, *, clock: Callable[[], int] = now_epoch
    ) -> None:
        self._store = store
        self._clock = clock

    def new_audit_id(self, prefix: str = "audit") -> str:
        return f"{prefix}_{self._clock()}_{uuid4().hex[:8]}"

    async def capture_pairs(
        self,
        operation: str,
        reason: str,
        pairs: Iterable[tuple[str, str]],
        *,
        include_assignments: bool = False,
        audit_id: str | None = None,
    ) -> ProgressSnapshot:
        """Back up the progress rows of every (user_id, course_id) pair."""
        wanted = set(pairs)
        tables = [UNIT_PROGRESS, COURSE_PROGRESS]
        if include_assignments:
            tables.append(ASSIGNMENTS)

        rows: dict[str, list[dict[str, Any]]] = {t: [] for t in tables}
        if wanted:
            filter = {
                "user_id": sorted({u for u, _ in wanted}),
                "course_id": sorted({c for _, c in wanted}),
            }
            for table in tables:
                rows[table] = [
                    r
                    for r in await self._store.select(table, filter)
                    if (r["user_id"], r["course_id"]) in wanted
                ]
        return await self.capture(operation, reason, rows, audit_id=audit_id)

    async def capture(
        self,
        operation: str,
        reason: str,
        rows: dict[str, list[dict[str, Any]]],
        *,
        audit_id: str | None = None,
    ) -> ProgressSnapshot:
        audit_id = audit_id or self.new_audit_id()
        created_at = self._clock()

        await self._write(audit_id, operation, reason, _MARKER, {}, created_at)
        for table, table_rows in rows.items():
            for row in table_rows:
                await self._write(audit_id, operation, reason, table, row, created_at)

        snapshot = ProgressSnapshot(
            audit_id=audit_id,
            operation=operation,
            reason=reason,
            created_at=created_at,
            rows={t: list(r) for t, r in rows.items() if r},
        )
        logger.info(
            "Snapshot %s captured %d row(s) before %s",
            audit_id,
            snapshot.row_count,
            operation,
            extra={"audit_id": audit_id},
        )
        return snapshot

    async def _write(
        self,
        audit_id: str,
        operation: str,
        reason: str,
        table: str,
        row: dict[str, Any],
        created_at: int,
    ) -> None:
        await self._store.upsert(
            SNAPSHOTS,
            {
                "id": str(uuid4()),
                "audit_id": audit_id,
                "operation": operation,
                "reason": reason,
                "table_name": table,
                "row_json": json.dumps(row, sort_keys=True, default=str),
                "created_at": created_at,
            },
            ("id",),
        )

    async def get(self, audit_id: str) -> ProgressSnapshot:
        stored = await self._store.select(SNAPSHOTS, {"audit_id": audit_id})
        if not stored:
            raise SnapshotNotFoundError(audit_id)

        rows: dict[str, list[dict[str, Any]]] = {}
        for r in stored:
            if r["table_name"] == _MARKER:
                continue
            rows.setdefault(r["table_name"], []).append(json.loads(r["row_json"]))
        first = stored[0]
        return ProgressSnapshot(
            audit_id=audit_id,
            operation=first["operation"],
            reason=first["reason"],
            created_at=first["created_at"],
            rows=rows,
        )

    async def restore(self, audit_id: str) -> int:
        """Write every captured row back.  Returns the number of rows restored."""
        snapshot = await self.get(audit_id)
        restored = 0
        for table, table_rows in snapshot.rows.items():
            key = TABLE_KEYS.get(table)
            if key is None:
                logger.warning("Snapshot %s has rows for unknown table %s", audit_id, table)
                continue
            for row in table_rows:
                await self._store.upsert(table, row, key)
                restored += 1
        logger.info(
            "Restored %d row(s) from snapshot %s",
            restored,
            audit_id,
            extra={"audit_id": audit_id},
        )
        return restored


snapshot_service = SnapshotService(row_store)
