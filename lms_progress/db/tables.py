"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in lms_progress/models/.
The row store (lms_progress/repos/row_store.py) reads and writes them as
plain dicts keyed by column name; ``TABLES`` is the name → row-class
lookup it uses.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from lms_progress.db.engine import Base

# --- Course structure (read-only for this layer) ---


class LessonRow(Base):
    __tablename__ = "lessons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class UnitRow(Base):
    __tablename__ = "units"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lesson_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lessons.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CourseAssignmentRow(Base):
    __tablename__ = "course_assignments"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_at: Mapped[int | None] = mapped_column(Integer, nullable=True)


# --- Progress ---


class UserUnitProgressRow(Base):
    """Ground truth: one row per (user_id, unit_id, course_id)."""

    __tablename__ = "user_unit_progress"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    unit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    video_completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    video_completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    video_watch_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    quiz_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiz_completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quiz_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[int | None] = mapped_column(Integer, nullable=True)


class UserCourseProgressRow(Base):
    """Rollup: derived from user_unit_progress."""

    __tablename__ = "user_course_progress"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="not_started"
    )  # not_started|in_progress|completed
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_accessed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[int | None] = mapped_column(Integer, nullable=True)


# --- Audit ---


class ProgressSnapshotRow(Base):
    """Pre-image of one row, grouped by audit_id."""

    __tablename__ = "progress_snapshots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    audit_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    row_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)


TABLES: dict[str, type[Base]] = {
    LessonRow.__tablename__: LessonRow,
    UnitRow.__tablename__: UnitRow,
    CourseAssignmentRow.__tablename__: CourseAssignmentRow,
    UserUnitProgressRow.__tablename__: UserUnitProgressRow,
    UserCourseProgressRow.__tablename__: UserCourseProgressRow,
    ProgressSnapshotRow.__tablename__: ProgressSnapshotRow,
}

metadata = Base.metadata
