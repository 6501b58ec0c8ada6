"""Persistence for metadata jobs.

Every mutation goes through :meth:`JobStore.transaction`, which loads the job
row under a per-job lock, hands out a working copy, and commits it back with a
version check so concurrent writers cannot silently overwrite each other.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import delete, update
from sqlmodel import col, select

from shelfarr.core.approval.models import JobFile, JobOptions
from shelfarr.core.database import SessionFactory, retry_db_operation
from shelfarr.core.exceptions import JobConflictError, JobNotFoundError
from shelfarr.core.metrics import metadata_job_transitions_total
from shelfarr.db.models import DEFAULT_JOB_TTL_SECONDS, MetadataJob, MetadataJobLog

from .models import BACKGROUND_STATUSES, Job, JobLogEntry, LogType

logger = structlog.get_logger("shelfarr.jobs.store")

# One lock per job id; jobs never share a lock
_job_locks: dict[str, asyncio.Lock] = {}


def _job_lock(job_id: str) -> asyncio.Lock:
    lock = _job_locks.get(job_id)
    if lock is None:
        lock = asyncio.Lock()
        _job_locks[job_id] = lock
    return lock


class JobTransaction:
    """Mutable view of one job inside :meth:`JobStore.transaction`."""

    def __init__(self, job: Job) -> None:
        self.job = job
        self.initial_status = job.status
        self.entries: list[MetadataJobLog] = []

    def log(self, message: str, detail: str | None = None, type: LogType = "info") -> None:
        """Queue a log entry, written in the same commit as the job."""
        self.entries.append(
            MetadataJobLog(
                job_id=self.job.id,
                step=self.job.status,
                message=message,
                detail=detail,
                type=type,
                sequence=time.time_ns(),
            )
        )
        log_method = {
            "error": logger.error,
            "warning": logger.warning,
        }.get(type, logger.info)
        log_method(message, job_id=self.job.id, step=self.job.status, detail=detail)

    def progress(self, message: str, detail: str | None = None) -> None:
        """Snapshot the current progress message on the job row."""
        self.job.current_progress_message = message
        self.job.current_progress_detail = detail
        self.job.last_progress_at = int(time.time())


class JobStore:
    """Reads and writes ``metadata_jobs`` and ``metadata_job_logs``."""

    def __init__(self, session_factory: SessionFactory, ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS) -> None:
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    async def create(self, files: Iterable[JobFile], options: JobOptions | None = None) -> Job:
        now = int(time.time())
        row = MetadataJob(
            status="options",
            options=(options or JobOptions()).model_dump(mode="json"),
            files=[item.model_dump(mode="json") for item in files],
            state={},
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl_seconds,
        )
        async with self.session_factory() as session:
            session.add(row)
            session.add(
                MetadataJobLog(
                    job_id=row.id,
                    step="options",
                    message="Job created",
                    detail=f"{len(row.files)} file(s)",
                    sequence=time.time_ns(),
                )
            )
            await retry_db_operation(lambda: session.commit(), session=session, operation_type="create_metadata_job")
        metadata_job_transitions_total.labels(status="options").inc()
        logger.info("Metadata job created", job_id=row.id, files=len(row.files))
        return Job.from_row(row)

    async def load(self, job_id: str) -> Job:
        """Read a job without taking its lock."""
        async with self.session_factory() as session:
            row = await retry_db_operation(
                lambda: session.get(MetadataJob, job_id),
                session=session,
                operation_type="load_metadata_job",
            )
        if row is None:
            raise JobNotFoundError(job_id)
        return Job.from_row(row)

    async def logs(self, job_id: str, limit: int | None = None) -> list[JobLogEntry]:
        """Log entries oldest first; ``limit`` keeps the most recent ones."""
        async with self.session_factory() as session:
            query = (
                select(MetadataJobLog)
                .where(MetadataJobLog.job_id == job_id)
                .order_by(col(MetadataJobLog.timestamp).desc(), col(MetadataJobLog.sequence).desc())
            )
            if limit is not None:
                query = query.limit(limit)
            result = await session.exec(query)
            rows = list(result.all())
        rows.reverse()
        return [JobLogEntry.from_row(row) for row in rows]

    async def list_jobs(self, include_expired: bool = False) -> list[Job]:
        async with self.session_factory() as session:
            query = select(MetadataJob).order_by(col(MetadataJob.created_at).desc())
            if not include_expired:
                query = query.where(MetadataJob.expires_at > int(time.time()))
            result = await session.exec(query)
            return [Job.from_row(row) for row in result.all()]

    async def ids_in_status(self, statuses: Iterable[str] = BACKGROUND_STATUSES) -> list[str]:
        async with self.session_factory() as session:
            result = await session.exec(select(MetadataJob.id).where(col(MetadataJob.status).in_(list(statuses))))
            return list(result.all())

    async def expired_ids(self, now: int | None = None) -> list[str]:
        now = now if now is not None else int(time.time())
        async with self.session_factory() as session:
            result = await session.exec(select(MetadataJob.id).where(MetadataJob.expires_at <= now))
            return list(result.all())

    async def delete(self, job_id: str) -> bool:
        """Remove a job and its log. Returns False if it did not exist."""
        async with _job_lock(job_id):
            async with self.session_factory() as session:
                await session.execute(delete(MetadataJobLog).where(col(MetadataJobLog.job_id) == job_id))
                result = await session.execute(delete(MetadataJob).where(col(MetadataJob.id) == job_id))
                await retry_db_operation(
                    lambda: session.commit(), session=session, operation_type="delete_metadata_job"
                )
        _job_locks.pop(job_id, None)
        deleted = bool(result.rowcount)
        if deleted:
            logger.info("Metadata job deleted", job_id=job_id)
        return deleted

    @asynccontextmanager
    async def transaction(self, job_id: str) -> AsyncIterator[JobTransaction]:
        """Read-modify-write one job.

        The job is committed when the block exits normally; an exception
        discards every change made inside it. The commit only succeeds if
        nobody else committed since the load, otherwise JobConflictError.
        """
        async with _job_lock(job_id):
            async with self.session_factory() as session:
                row = await retry_db_operation(
                    lambda: session.get(MetadataJob, job_id),
                    session=session,
                    operation_type="load_metadata_job",
                )
                if row is None:
                    raise JobNotFoundError(job_id)
                loaded_version = row.version
                tx = JobTransaction(Job.from_row(row))

                yield tx

                job = tx.job
                now = int(time.time())
                values = job.column_values()
                values["version"] = loaded_version + 1
                values["updated_at"] = now

                result = await retry_db_operation(
                    lambda: session.execute(
                        update(MetadataJob)
                        .where(col(MetadataJob.id) == job_id)
                        .where(col(MetadataJob.version) == loaded_version)
                        .values(**values)
                    ),
                    session=session,
                    operation_type="update_metadata_job",
                )
                if result.rowcount == 0:
                    await session.rollback()
                    logger.warning("Metadata job changed concurrently", job_id=job_id, version=loaded_version)
                    raise JobConflictError(f"Metadata job {job_id} was modified concurrently; reload and retry")

                session.add_all(tx.entries)
                await retry_db_operation(lambda: session.commit(), session=session, operation_type="commit_metadata_job")

                job.version = loaded_version + 1
                job.updated_at = now
                if job.status != tx.initial_status:
                    metadata_job_transitions_total.labels(status=job.status).inc()
                    logger.info(
                        "Metadata job status changed",
                        job_id=job_id,
                        from_status=tx.initial_status,
                        to_status=job.status,
                    )
