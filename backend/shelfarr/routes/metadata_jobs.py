"""Metadata job routes: create, approve series, review files and apply."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, ValidationError

from shelfarr.core.approval import ApplyResult, FieldUpdate, FileChange, JobOptions, SeriesSelection
from shelfarr.core.exceptions import (
    InvalidRequestError,
    JobConflictError,
    JobNotFoundError,
    JobStateError,
    ShelfarrError,
    SourceConfigurationError,
    SourceError,
)
from shelfarr.core.jobs import Job, JobLogEntry, MetadataJobService
from shelfarr.core.sources.models import IssueRecord, MetadataSource

logger = structlog.get_logger("shelfarr.routes.metadata_jobs")

T = TypeVar("T")


# Request/Response Models
class JobCreate(BaseModel):
    """Request model for creating a metadata job."""

    files: list[str] = Field(..., min_length=1, description="Archive paths to process")
    options: JobOptions | None = Field(default=None, description="Initial job options")


class JobStart(BaseModel):
    options: JobOptions | None = Field(default=None, description="Options to use instead of the stored ones")


class SeriesSearchRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Series name to search for")
    source: MetadataSource | None = Field(default=None, description="Search only this source")


class ApproveSeriesRequest(BaseModel):
    series: SeriesSelection
    issue_matching_series: SeriesSelection | None = Field(
        default=None, description="Series whose issues files are matched against, when it differs"
    )
    apply_to_remaining: bool = False


class SeriesSourcesRequest(BaseModel):
    accepted_sources: list[MetadataSource] | None = Field(
        default=None, description="Cross-source matches to merge; unchanged when omitted"
    )
    field_overrides: dict[str, MetadataSource] = Field(
        default_factory=dict, description="Series field name to the source whose value it should take"
    )


class FieldApprovalsRequest(BaseModel):
    """Per-field changes: ``{"approved": bool, "edited_value": str | null}`` or an ``edit`` object."""

    fields: dict[str, dict[str, Any]]


class SelectIssueRequest(BaseModel):
    issue_id: str = Field(..., min_length=1)


class MoveFileRequest(BaseModel):
    group_index: int = Field(..., ge=0)


class BatchRequest(BaseModel):
    file_ids: list[str] | None = Field(default=None, description="Limit to these files; all files when omitted")


class HighConfidenceRequest(BatchRequest):
    threshold: float = Field(default=0.8, ge=0.0, le=1.0)


class JobSummary(BaseModel):
    id: str
    status: str
    file_count: int
    group_count: int
    current_progress_message: str | None
    error: str | None
    created_at: int
    updated_at: int
    expires_at: int


class JobListResponse(BaseModel):
    jobs: list[JobSummary]


class JobDetailResponse(BaseModel):
    job: Job
    logs: list[JobLogEntry]


class FileListResponse(BaseModel):
    files: list[FileChange]


class IssueListResponse(BaseModel):
    issues: list[IssueRecord]


class CountResponse(BaseModel):
    count: int


def _summary(job: Job) -> JobSummary:
    return JobSummary(
        id=job.id,
        status=job.status,
        file_count=len(job.files),
        group_count=len(job.groups),
        current_progress_message=job.current_progress_message,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        expires_at=job.expires_at,
    )


async def _call(operation: Awaitable[T]) -> T:
    """Await a service call, translating pipeline errors into HTTP errors."""
    try:
        return await operation
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (JobStateError, JobConflictError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except InvalidRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except SourceConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_424_FAILED_DEPENDENCY,
            detail={"source": e.source, "message": e.message, "hint": e.hint},
        ) from e
    except SourceError as e:
        logger.warning("Metadata source request failed", source=e.source, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{e.source} request failed: {e.message}",
        ) from e
    except ShelfarrError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)) from e


def create_metadata_jobs_router(
    get_job_service: Callable[..., MetadataJobService],
) -> APIRouter:
    """Create metadata jobs router.

    Args:
        get_job_service: Dependency returning the metadata job service

    Returns:
        Configured APIRouter instance
    """
    router = APIRouter(prefix="/api/metadata-jobs", tags=["metadata-jobs"])

    # -- jobs -----------------------------------------------------------------

    @router.post("", status_code=status.HTTP_201_CREATED, response_model=Job)
    async def create_job(payload: JobCreate, service: MetadataJobService = Depends(get_job_service)) -> Job:
        """Create a job for a batch of archives."""
        return await _call(service.create_job(payload.files, payload.options))

    @router.get("", response_model=JobListResponse)
    async def list_jobs(service: MetadataJobService = Depends(get_job_service)) -> JobListResponse:
        jobs = await _call(service.list_jobs())
        return JobListResponse(jobs=[_summary(job) for job in jobs])

    @router.get("/{job_id}", response_model=JobDetailResponse)
    async def get_job(
        job_id: str,
        log_limit: int | None = Query(default=200, ge=1),
        service: MetadataJobService = Depends(get_job_service),
    ) -> JobDetailResponse:
        """Poll a job. Has no side effects."""
        job = await _call(service.get_job(job_id))
        logs = await _call(service.get_logs(job_id, limit=log_limit))
        return JobDetailResponse(job=job, logs=logs)

    @router.patch("/{job_id}/options", response_model=Job)
    async def update_options(
        job_id: str, payload: JobOptions, service: MetadataJobService = Depends(get_job_service)
    ) -> Job:
        return await _call(service.update_options(job_id, payload))

    @router.post("/{job_id}/start", response_model=Job)
    async def start_job(
        job_id: str, payload: JobStart | None = None, service: MetadataJobService = Depends(get_job_service)
    ) -> Job:
        return await _call(service.start_job(job_id, payload.options if payload else None))

    @router.post("/{job_id}/touch", response_model=Job)
    async def touch_job(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Job:
        return await _call(service.touch_job(job_id))

    @router.post("/{job_id}/cancel", response_model=Job)
    async def cancel_job(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Job:
        return await _call(service.cancel_job(job_id))

    @router.post("/{job_id}/complete", response_model=Job)
    async def complete_job(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Job:
        """Finish review without writing any file."""
        return await _call(service.complete_job(job_id))

    @router.post("/{job_id}/abandon", status_code=status.HTTP_204_NO_CONTENT)
    async def abandon_job(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Response:
        await _call(service.abandon_job(job_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_job(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Response:
        await _call(service.delete_job(job_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # -- series approval ------------------------------------------------------

    @router.post("/{job_id}/search", response_model=Job)
    async def search_series(
        job_id: str, payload: SeriesSearchRequest, service: MetadataJobService = Depends(get_job_service)
    ) -> Job:
        """Search the current series group with a custom query."""
        return await _call(service.search_series(job_id, payload.query, payload.source))

    @router.post("/{job_id}/load-more", response_model=Job)
    async def load_more_results(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Job:
        return await _call(service.load_more_results(job_id))

    @router.post("/{job_id}/approve-series", response_model=Job)
    async def approve_series(
        job_id: str, payload: ApproveSeriesRequest, service: MetadataJobService = Depends(get_job_service)
    ) -> Job:
        return await _call(
            service.approve_series(
                job_id,
                payload.series,
                issue_matching=payload.issue_matching_series,
                apply_to_remaining=payload.apply_to_remaining,
            )
        )

    @router.post("/{job_id}/skip-series", response_model=Job)
    async def skip_series(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Job:
        return await _call(service.skip_series(job_id))

    @router.post("/{job_id}/series/{index}/navigate", response_model=Job)
    async def navigate_to_group(
        job_id: str, index: int, service: MetadataJobService = Depends(get_job_service)
    ) -> Job:
        """Reopen a series group from review, keeping its series."""
        return await _call(service.navigate_to_group(job_id, index))

    @router.post("/{job_id}/series/{index}/reset", response_model=Job)
    async def reset_group(job_id: str, index: int, service: MetadataJobService = Depends(get_job_service)) -> Job:
        """Reopen a series group from review and clear its series."""
        return await _call(service.reset_group(job_id, index))

    @router.patch("/{job_id}/series/{index}/sources", response_model=Job)
    async def update_series_sources(
        job_id: str,
        index: int,
        payload: SeriesSourcesRequest,
        service: MetadataJobService = Depends(get_job_service),
    ) -> Job:
        """Confirm cross-source matches and pick the source of individual fields."""
        return await _call(
            service.update_series_sources(job_id, index, payload.accepted_sources, payload.field_overrides)
        )

    # -- file review ----------------------------------------------------------

    @router.get("/{job_id}/files", response_model=FileListResponse)
    async def list_files(
        job_id: str,
        group_index: int | None = Query(default=None, ge=0),
        file_status: str | None = Query(default=None, alias="status"),
        service: MetadataJobService = Depends(get_job_service),
    ) -> FileListResponse:
        files = await _call(service.list_files(job_id, group_index=group_index, status=file_status))
        return FileListResponse(files=files)

    @router.get("/{job_id}/files/{file_id}/issues", response_model=IssueListResponse)
    async def available_issues(
        job_id: str, file_id: str, service: MetadataJobService = Depends(get_job_service)
    ) -> IssueListResponse:
        """Issues the file can be matched to manually."""
        return IssueListResponse(issues=await _call(service.available_issues(job_id, file_id)))

    @router.patch("/{job_id}/files/{file_id}/fields", response_model=FileChange)
    async def update_field_approvals(
        job_id: str,
        file_id: str,
        payload: FieldApprovalsRequest,
        service: MetadataJobService = Depends(get_job_service),
    ) -> FileChange:
        try:
            updates = {name: FieldUpdate.from_payload(value) for name, value in payload.fields.items()}
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
        return await _call(service.update_field_approvals(job_id, file_id, updates))

    @router.post("/{job_id}/files/{file_id}/select-issue", response_model=FileChange)
    async def select_issue(
        job_id: str,
        file_id: str,
        payload: SelectIssueRequest,
        service: MetadataJobService = Depends(get_job_service),
    ) -> FileChange:
        return await _call(service.manual_select_issue(job_id, file_id, payload.issue_id))

    @router.post("/{job_id}/files/{file_id}/accept-fields", response_model=FileChange)
    async def accept_fields(
        job_id: str, file_id: str, service: MetadataJobService = Depends(get_job_service)
    ) -> FileChange:
        return await _call(service.accept_all_fields(job_id, file_id))

    @router.post("/{job_id}/files/{file_id}/reject", response_model=FileChange)
    async def reject_file(
        job_id: str, file_id: str, service: MetadataJobService = Depends(get_job_service)
    ) -> FileChange:
        return await _call(service.reject_file(job_id, file_id))

    @router.post("/{job_id}/files/{file_id}/restore", response_model=FileChange)
    async def restore_file(
        job_id: str, file_id: str, service: MetadataJobService = Depends(get_job_service)
    ) -> FileChange:
        return await _call(service.restore_file(job_id, file_id))

    @router.post("/{job_id}/files/{file_id}/move", response_model=FileChange)
    async def move_file(
        job_id: str,
        file_id: str,
        payload: MoveFileRequest,
        service: MetadataJobService = Depends(get_job_service),
    ) -> FileChange:
        return await _call(service.move_file_to_group(job_id, file_id, payload.group_index))

    # -- batch ----------------------------------------------------------------

    @router.post("/{job_id}/accept-high-confidence", response_model=CountResponse)
    async def accept_high_confidence(
        job_id: str,
        payload: HighConfidenceRequest | None = None,
        service: MetadataJobService = Depends(get_job_service),
    ) -> CountResponse:
        payload = payload or HighConfidenceRequest()
        count = await _call(service.accept_high_confidence(job_id, payload.threshold, payload.file_ids))
        return CountResponse(count=count)

    @router.post("/{job_id}/accept-all", response_model=CountResponse)
    async def accept_all(
        job_id: str, payload: BatchRequest | None = None, service: MetadataJobService = Depends(get_job_service)
    ) -> CountResponse:
        file_ids = payload.file_ids if payload else None
        return CountResponse(count=await _call(service.accept_all_files(job_id, file_ids)))

    @router.post("/{job_id}/reject-all", response_model=CountResponse)
    async def reject_all(
        job_id: str, payload: BatchRequest | None = None, service: MetadataJobService = Depends(get_job_service)
    ) -> CountResponse:
        file_ids = payload.file_ids if payload else None
        return CountResponse(count=await _call(service.reject_all_files(job_id, file_ids)))

    # -- apply ----------------------------------------------------------------

    @router.post("/{job_id}/apply", response_model=Job)
    async def start_apply(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> Job:
        """Start writing approved changes in the background."""
        return await _call(service.start_apply(job_id))

    @router.get("/{job_id}/apply-result", response_model=ApplyResult)
    async def get_apply_result(job_id: str, service: MetadataJobService = Depends(get_job_service)) -> ApplyResult:
        result = await _call(service.get_apply_result(job_id))
        if result is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job has not been applied")
        return result

    return router
