"""Database models for Shelfarr.

All SQLModel models should be defined here and imported in db/__init__.py.

Models follow these patterns:
- Use singular nouns: MetadataJob, MetadataJobLog
- Table names use plural, snake_case: metadata_jobs, metadata_job_logs
- Use uuid.uuid4().hex for IDs (32 character hex strings)
- Timestamps are integer unix seconds
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from sqlalchemy import JSON, Column, Index, Text
from sqlmodel import Field, SQLModel

# SQLModel metadata - required for Alembic migrations
metadata = SQLModel.metadata

DEFAULT_JOB_TTL_SECONDS = 24 * 60 * 60


class MetadataJob(SQLModel, table=True):
    """A metadata approval job: one batch of files walked from options to apply."""

    __tablename__ = "metadata_jobs"  # type: ignore[assignment]

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    status: str = Field(
        default="options", index=True
    )  # options, initializing, series_approval, fetching_issues, file_review, applying, complete, cancelled, error
    current_series_index: int = Field(default=0)

    # Serialized pipeline state (see shelfarr.core.jobs.models)
    options: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    files: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    state: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    apply_result: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    # Last progress message, so polling clients see activity between steps
    current_progress_message: str | None = Field(default=None)
    current_progress_detail: str | None = Field(default=None)
    last_progress_at: int | None = Field(default=None)

    error: str | None = Field(default=None, sa_column=Column(Text))
    version: int = Field(default=1)  # Bumped on every committed mutation

    created_at: int = Field(default_factory=lambda: int(time.time()))
    updated_at: int = Field(default_factory=lambda: int(time.time()))
    expires_at: int = Field(default_factory=lambda: int(time.time()) + DEFAULT_JOB_TTL_SECONDS)
    completed_at: int | None = Field(default=None)

    __table_args__ = (
        Index("idx_metadata_jobs_status", "status"),
        Index("idx_metadata_jobs_expires_at", "expires_at"),
    )


class MetadataJobLog(SQLModel, table=True):
    """Activity log entry for a metadata job."""

    __tablename__ = "metadata_job_logs"  # type: ignore[assignment]

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    job_id: str = Field(index=True)  # Foreign key to metadata_jobs
    step: str  # Job status the entry was written in
    message: str
    detail: str | None = Field(default=None, sa_column=Column(Text))
    type: str = Field(default="info")  # info, success, warning, error
    timestamp: int = Field(default_factory=lambda: int(time.time()))
    sequence: int = Field(default=0)  # Orders entries written within the same second

    __table_args__ = (
        Index("idx_metadata_job_logs_job", "job_id"),
        Index("idx_metadata_job_logs_job_sequence", "job_id", "sequence"),
    )
