"""create course structure, progress and snapshot tables

Revision ID: 3b7e1c52d9a0
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "3b7e1c52d9a0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "lessons",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("course_id", sa.String(length=64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_lessons_course_id", "lessons", ["course_id"])

    op.create_table(
        "units",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "lesson_id",
            sa.String(length=64),
            sa.ForeignKey("lessons.id"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_units_lesson_id", "units", ["lesson_id"])

    op.create_table(
        "course_assignments",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("course_id", sa.String(length=64), primary_key=True),
        sa.Column("assigned_by", sa.String(length=64), nullable=True),
        sa.Column("assigned_at", sa.Integer(), nullable=True),
    )

    op.create_table(
        "user_unit_progress",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("unit_id", sa.String(length=64), primary_key=True),
        sa.Column("course_id", sa.String(length=64), primary_key=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.Integer(), nullable=True),
        sa.Column("completion_method", sa.String(length=64), nullable=True),
        sa.Column(
            "video_completed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("video_completed_at", sa.Integer(), nullable=True),
        sa.Column(
            "video_watch_percentage", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "quiz_completed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("quiz_completed_at", sa.Integer(), nullable=True),
        sa.Column("quiz_score", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.Integer(), nullable=True),
    )
    op.create_index(
        "ix_user_unit_progress_course_id", "user_unit_progress", ["course_id"]
    )

    op.create_table(
        "user_course_progress",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("course_id", sa.String(length=64), primary_key=True),
        sa.Column(
            "status", sa.String(length=32), nullable=False, server_default="not_started"
        ),
        sa.Column(
            "progress_percentage", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("started_at", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.Integer(), nullable=True),
        sa.Column("last_accessed_at", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.Integer(), nullable=True),
    )

    op.create_table(
        "progress_snapshots",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("audit_id", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("table_name", sa.String(length=64), nullable=False),
        sa.Column("row_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
    )
    op.create_index(
        "ix_progress_snapshots_audit_id", "progress_snapshots", ["audit_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_progress_snapshots_audit_id", table_name="progress_snapshots")
    op.drop_table("progress_snapshots")
    op.drop_table("user_course_progress")
    op.drop_index("ix_user_unit_progress_course_id", table_name="user_unit_progress")
    op.drop_table("user_unit_progress")
    op.drop_table("course_assignments")
    op.drop_index("ix_units_lesson_id", table_name="units")
    op.drop_table("units")
    op.drop_index("ix_lessons_course_id", table_name="lessons")
    op.drop_table("lessons")
