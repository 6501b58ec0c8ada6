"""Metadata job and job log tables

Revision ID: 0001_metadata_jobs
Revises:
Create Date: 2026-10-19 00:00:00

"""
from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
import sqlmodel
from alembic import op

revision: str = "0001_metadata_jobs"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "metadata_jobs",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("current_series_index", sa.Integer(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("files", sa.JSON(), nullable=True),
        sa.Column("state", sa.JSON(), nullable=True),
        sa.Column("apply_result", sa.JSON(), nullable=True),
        sa.Column("current_progress_message", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("current_progress_detail", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("last_progress_at", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.Integer(), nullable=False),
        sa.Column("completed_at", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_metadata_jobs_status", "metadata_jobs", ["status"])
    op.create_index("idx_metadata_jobs_expires_at", "metadata_jobs", ["expires_at"])
    op.create_index(op.f("ix_metadata_jobs_status"), "metadata_jobs", ["status"])

    op.create_table(
        "metadata_job_logs",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("job_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("step", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("message", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("type", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("timestamp", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_metadata_job_logs_job", "metadata_job_logs", ["job_id"])
    op.create_index("idx_metadata_job_logs_job_sequence", "metadata_job_logs", ["job_id", "sequence"])
    op.create_index(op.f("ix_metadata_job_logs_job_id"), "metadata_job_logs", ["job_id"])


def downgrade() -> None:
    op.drop_index(op.f("ix_metadata_job_logs_job_id"), table_name="metadata_job_logs")
    op.drop_index("idx_metadata_job_logs_job_sequence", table_name="metadata_job_logs")
    op.drop_index("idx_metadata_job_logs_job", table_name="metadata_job_logs")
    op.drop_table("metadata_job_logs")
    op.drop_index(op.f("ix_metadata_jobs_status"), table_name="metadata_jobs")
    op.drop_index("idx_metadata_jobs_expires_at", table_name="metadata_jobs")
    op.drop_index("idx_metadata_jobs_status", table_name="metadata_jobs")
    op.drop_table("metadata_jobs")
