"""In-memory view of a metadata job and its activity log."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from shelfarr.core.approval.models import (
    ApplyProgress,
    ApplyResult,
    FileChange,
    JobFile,
    JobOptions,
    SeriesGroup,
)
from shelfarr.core.exceptions import InvalidRequestError
from shelfarr.db.models import MetadataJob, MetadataJobLog

JobStatus = Literal[
    "options",
    "initializing",
    "series_approval",
    "fetching_issues",
    "file_review",
    "applying",
    "complete",
    "cancelled",
    "error",
]
LogType = Literal["info", "success", "warning", "error"]

# Statuses whose work happens in a background step
BACKGROUND_STATUSES: frozenset[str] = frozenset({"initializing", "fetching_issues", "applying"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"complete", "cancelled", "error"})


class JobState(BaseModel):
    series_groups: list[SeriesGroup] = Field(default_factory=list)
    file_changes: list[FileChange] = Field(default_factory=list)
    apply_progress: ApplyProgress | None = None


class Job(BaseModel):
    """Working copy of a ``metadata_jobs`` row with its JSON columns parsed."""

    id: str
    status: JobStatus
    current_series_index: int = 0
    options: JobOptions = Field(default_factory=JobOptions)
    files: list[JobFile] = Field(default_factory=list)
    state: JobState = Field(default_factory=JobState)
    apply_result: ApplyResult | None = None
    current_progress_message: str | None = None
    current_progress_detail: str | None = None
    last_progress_at: int | None = None
    error: str | None = None
    version: int = 1
    created_at: int = 0
    updated_at: int = 0
    expires_at: int = 0
    completed_at: int | None = None

    @classmethod
    def from_row(cls, row: MetadataJob) -> Job:
        return cls(
            id=row.id,
            status=row.status,  # type: ignore[arg-type]
            current_series_index=row.current_series_index,
            options=JobOptions.model_validate(row.options or {}),
            files=[JobFile.model_validate(item) for item in row.files or []],
            state=JobState.model_validate(row.state or {}),
            apply_result=ApplyResult.model_validate(row.apply_result) if row.apply_result else None,
            current_progress_message=row.current_progress_message,
            current_progress_detail=row.current_progress_detail,
            last_progress_at=row.last_progress_at,
            error=row.error,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
            expires_at=row.expires_at,
            completed_at=row.completed_at,
        )

    def column_values(self) -> dict[str, Any]:
        """Values for an UPDATE of the row, JSON columns serialized."""
        return {
            "status": self.status,
            "current_series_index": self.current_series_index,
            "options": self.options.model_dump(mode="json"),
            "files": [item.model_dump(mode="json") for item in self.files],
            "state": self.state.model_dump(mode="json"),
            "apply_result": self.apply_result.model_dump(mode="json") if self.apply_result else None,
            "current_progress_message": self.current_progress_message,
            "current_progress_detail": self.current_progress_detail,
            "last_progress_at": self.last_progress_at,
            "error": self.error,
            "expires_at": self.expires_at,
            "completed_at": self.completed_at,
        }

    # -- lookups ---------------------------------------------------------------

    @property
    def groups(self) -> list[SeriesGroup]:
        return self.state.series_groups

    @property
    def file_changes(self) -> list[FileChange]:
        return self.state.file_changes

    def group(self, index: int) -> SeriesGroup:
        if index < 0 or index >= len(self.groups):
            raise InvalidRequestError(f"Series group {index} does not exist")
        return self.groups[index]

    def current_group(self) -> SeriesGroup:
        return self.group(self.current_series_index)

    def file(self, file_id: str) -> JobFile:
        for item in self.files:
            if item.file_id == file_id:
                return item
        raise InvalidRequestError(f"File {file_id} is not part of this job")

    def active_files(self) -> list[JobFile]:
        excluded = set(self.options.exclude_file_ids)
        return [item for item in self.files if item.file_id not in excluded]


class JobLogEntry(BaseModel):
    id: str
    job_id: str
    step: str
    message: str
    detail: str | None = None
    type: LogType = "info"
    timestamp: int

    @classmethod
    def from_row(cls, row: MetadataJobLog) -> JobLogEntry:
        return cls(
            id=row.id,
            job_id=row.job_id,
            step=row.step,
            message=row.message,
            detail=row.detail,
            type=row.type,  # type: ignore[arg-type]
            timestamp=row.timestamp,
        )
