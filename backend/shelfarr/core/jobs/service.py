"""Metadata job operations.

Each public method is one user action. Anything that talks to a metadata
source runs before the job lock is taken; the job itself only changes inside
a store transaction.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

import structlog

from shelfarr.core import approval
from shelfarr.core.approval import (
    ApplyResult,
    FieldUpdate,
    FileChange,
    JobFile,
    JobOptions,
    SeriesGroup,
    SeriesSelection,
)
from shelfarr.core.config import Settings, get_settings
from shelfarr.core.exceptions import InvalidRequestError, JobStateError
from shelfarr.core.matching import MatchingConfig, get_matching_config, score_series
from shelfarr.core.merge import SERIES_ARRAY_FIELDS, SERIES_SCALAR_FIELDS, merge_series_all_values
from shelfarr.core.sources.models import IssueRecord, SeriesMatch
from shelfarr.core.sources.registry import SourceRegistry

from .models import TERMINAL_STATUSES, Job, JobLogEntry, JobStatus
from .processor import JobProcessor, next_step, sort_file_changes
from .store import JobStore, JobTransaction

logger = structlog.get_logger("shelfarr.jobs.service")

CUSTOM_SEARCH_LIMIT = 15
SERIES_FIELDS = (*SERIES_SCALAR_FIELDS, *SERIES_ARRAY_FIELDS)


def require_status(job: Job, *statuses: JobStatus) -> None:
    if job.status not in statuses:
        raise JobStateError(
            f"Cannot do this while the job is in '{job.status}' (requires {' or '.join(statuses)})"
        )


class MetadataJobService:
    """Drives metadata jobs through series approval, file review and apply."""

    def __init__(
        self,
        store: JobStore,
        registry: SourceRegistry,
        processor: JobProcessor | None = None,
        settings: Settings | None = None,
        config: MatchingConfig | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self.config = config or get_matching_config()
        self.processor = processor or JobProcessor(store, registry, self.settings, self.config)

    @asynccontextmanager
    async def _mutate(self, job_id: str, *statuses: JobStatus) -> AsyncIterator[JobTransaction]:
        """Transaction that checks the job's status and extends its TTL."""
        async with self.store.transaction(job_id) as tx:
            if statuses:
                require_status(tx.job, *statuses)
            tx.job.expires_at = int(time.time()) + self.store.ttl_seconds
            yield tx

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_job(self, paths: Iterable[str], options: JobOptions | None = None) -> Job:
        unique = list(dict.fromkeys(path for path in paths if path and path.strip()))
        if not unique:
            raise InvalidRequestError("At least one file is required")
        return await self.store.create([JobFile(path=path) for path in unique], options)

    async def update_options(self, job_id: str, options: JobOptions) -> Job:
        async with self._mutate(job_id, "options") as tx:
            known = {item.file_id for item in tx.job.files}
            unknown = [file_id for file_id in options.exclude_file_ids if file_id not in known]
            if unknown:
                raise InvalidRequestError(f"Unknown file id(s) in exclusions: {', '.join(unknown)}")
            tx.job.options = options
            tx.log("Options updated")
        return tx.job

    async def start_job(self, job_id: str, options: JobOptions | None = None) -> Job:
        async with self._mutate(job_id, "options") as tx:
            if options is not None:
                tx.job.options = options
            tx.job.status = "initializing"
            tx.job.error = None
            tx.log(f"Starting with {len(tx.job.active_files())} file(s)")
            tx.progress("Grouping files")
        self.processor.schedule(job_id)
        return tx.job

    async def cancel_job(self, job_id: str) -> Job:
        self.processor.request_cancel(job_id)
        async with self._mutate(job_id) as tx:
            if tx.job.status in TERMINAL_STATUSES:
                raise JobStateError(f"Job is already {tx.job.status}")
            tx.job.status = "cancelled"
            tx.job.completed_at = int(time.time())
            tx.log("Job cancelled", type="warning")
            tx.progress("Cancelled")
        return tx.job

    async def complete_job(self, job_id: str) -> Job:
        """Finish a job from review without writing anything."""
        async with self._mutate(job_id, "file_review") as tx:
            tx.job.status = "complete"
            tx.job.completed_at = int(time.time())
            tx.log("Job completed without applying changes")
            tx.progress("Complete")
        return tx.job

    async def abandon_job(self, job_id: str) -> None:
        """Delete a job in any status, with its log and temp directory."""
        await self.store.load(job_id)
        self.processor.request_cancel(job_id)
        await self._remove(job_id)
        logger.info("Metadata job abandoned", job_id=job_id)

    async def delete_job(self, job_id: str) -> None:
        job = await self.store.load(job_id)
        if job.status not in TERMINAL_STATUSES:
            raise JobStateError(f"Only finished jobs can be deleted; cancel or abandon a job in '{job.status}'")
        await self._remove(job_id)

    async def _remove(self, job_id: str) -> None:
        await self.store.delete(job_id)
        self.processor.forget(job_id)
        temp_dir = self.settings.jobs_dir / job_id
        if temp_dir.exists():
            try:
                await asyncio.to_thread(shutil.rmtree, temp_dir)
            except OSError as exc:
                logger.warning("Could not remove job temp directory", job_id=job_id, path=str(temp_dir), error=str(exc))

    async def touch_job(self, job_id: str) -> Job:
        async with self._mutate(job_id) as tx:
            pass
        return tx.job

    async def cleanup_expired_jobs(self) -> int:
        job_ids = await self.store.expired_ids()
        for job_id in job_ids:
            self.processor.request_cancel(job_id)
            await self._remove(job_id)
        if job_ids:
            logger.info("Expired metadata jobs removed", count=len(job_ids))
        return len(job_ids)

    async def recover_active_jobs(self) -> int:
        return await self.processor.recover_active_jobs()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_job(self, job_id: str) -> Job:
        return await self.store.load(job_id)

    async def list_jobs(self) -> list[Job]:
        return await self.store.list_jobs()

    async def get_logs(self, job_id: str, limit: int | None = None) -> list[JobLogEntry]:
        await self.store.load(job_id)
        return await self.store.logs(job_id, limit=limit)

    async def list_files(
        self, job_id: str, group_index: int | None = None, status: str | None = None
    ) -> list[FileChange]:
        job = await self.store.load(job_id)
        return [
            change
            for change in job.file_changes
            if (group_index is None or change.group_index == group_index) and (status is None or change.status == status)
        ]

    async def get_apply_result(self, job_id: str) -> ApplyResult | None:
        job = await self.store.load(job_id)
        return job.apply_result

    # =========================================================================
    # Series approval
    # =========================================================================

    async def _resolve(self, group: SeriesGroup, selection: SeriesSelection) -> SeriesMatch:
        """A series from the group's results, or fetched from its source by id."""
        found = approval.find_in_results(group, selection)
        if found is not None:
            return found
        adapter = self.registry.require(selection.source)
        series = await adapter.fetch_by_external_id(selection.source_id)
        if series is None:
            raise InvalidRequestError(f"Series {selection.source_id} was not found in {selection.source}")
        return series.model_copy(update={"confidence": score_series(group.query, series, self.config)})

    async def search_series(self, job_id: str, query: str, source: str | None = None) -> Job:
        """Custom search for the current group; replaces its results."""
        query = query.strip()
        if not query:
            raise InvalidRequestError("Search query must not be empty")
        job = await self.store.load(job_id)
        require_status(job, "series_approval")
        index = job.current_series_index
        group = job.current_group()

        series_query = group.query.model_copy(update={"series": query})
        sources = approval.search_sources(self.registry, job.options, source)
        result = await approval.search_series(
            self.registry, series_query, sources, limit=CUSTOM_SEARCH_LIMIT, config=self.config
        )

        async with self._mutate(job_id, "series_approval") as tx:
            if tx.job.current_series_index != index:
                raise JobStateError("The current series changed during the search")
            group = tx.job.current_group()
            group.query = series_query
            group.display_name = query
            group.search_query = query
            group.search_source = source  # type: ignore[assignment]
            group.search_results = result.results
            group.pagination = result.pagination
            group.status = "pending"
            tx.log(f"Searched '{query}': {len(result.results)} result(s)")
        return tx.job

    async def load_more_results(self, job_id: str) -> Job:
        """Fetch the next page for the current group and append it."""
        job = await self.store.load(job_id)
        require_status(job, "series_approval")
        index = job.current_series_index
        group = job.current_group()
        pagination = group.pagination
        if pagination is None or not pagination.has_more:
            return job

        series_query = group.query.model_copy(update={"series": group.search_query or group.query.series})
        sources = approval.search_sources(self.registry, job.options, group.search_source)
        offset = pagination.offset + pagination.limit
        result = await approval.search_series(
            self.registry, series_query, sources, limit=pagination.limit, offset=offset, config=self.config
        )

        async with self._mutate(job_id, "series_approval") as tx:
            if tx.job.current_series_index != index:
                raise JobStateError("The current series changed during the search")
            group = tx.job.current_group()
            group.search_results = approval.merge_search_results(group.search_results, result.results)
            group.pagination = result.pagination
            tx.log(f"Loaded {len(result.results)} more result(s) for {group.display_name}")
        return tx.job

    async def approve_series(
        self,
        job_id: str,
        selected: SeriesSelection,
        issue_matching: SeriesSelection | None = None,
        apply_to_remaining: bool = False,
    ) -> Job:
        """Settle the current group's series and fetch its issues in the background."""
        job = await self.store.load(job_id)
        require_status(job, "series_approval")
        index = job.current_series_index
        group = job.current_group()

        series = await self._resolve(group, selected)
        issue_series = await self._resolve(group, issue_matching) if issue_matching is not None else None
        if issue_series is not None and issue_series.key == series.key:
            issue_series = None

        cross_source = merged = None
        if job.options.cross_source_matching and not self.processor.cancel_event(job_id).is_set():
            cross_source, merged = await self.processor.cross_match(job_id, series, job.options)

        async with self._mutate(job_id, "series_approval") as tx:
            if tx.job.current_series_index != index:
                raise JobStateError("The current series changed during approval")
            group = tx.job.current_group()
            group.selected_series = series
            group.issue_matching_series = issue_series
            group.cross_source = cross_source
            group.merged_series = merged
            group.status = "matched"
            tx.log(f"Approved {series.name} ({series.source} {series.source_id}) for {group.display_name}", type="success")
            if cross_source is not None:
                tx.log(f"Cross-source matching: {cross_source.summary}")
            if apply_to_remaining:
                count = approval.apply_to_remaining(tx.job.groups, index, series)
                if count:
                    tx.log(f"Applied {series.name} to {count} remaining series group(s)")

            file_ids = set(group.file_ids)
            tx.job.state.file_changes = [change for change in tx.job.file_changes if change.file_id not in file_ids]
            tx.job.status = "fetching_issues"
            tx.progress("Fetching issues", series.name)
        self.processor.schedule(job_id)
        return tx.job

    async def skip_series(self, job_id: str) -> Job:
        """Leave the current group's files untouched and move on."""
        async with self._mutate(job_id, "series_approval") as tx:
            group = tx.job.current_group()
            index = tx.job.current_series_index
            group.status = "skipped"
            group.selected_series = None
            group.issue_matching_series = None
            group.cross_source = None
            group.merged_series = None

            file_ids = set(group.file_ids)
            kept = [change for change in tx.job.file_changes if change.file_id not in file_ids]
            skipped = [
                FileChange(
                    file_id=item.file_id,
                    filename=item.filename,
                    file_path=item.path,
                    group_index=index,
                    status="rejected",
                )
                for item in (tx.job.file(file_id) for file_id in group.file_ids)
            ]
            tx.job.state.file_changes = sort_file_changes([*kept, *skipped])
            tx.log(f"Skipped {group.display_name}; {len(skipped)} file(s) will not be changed", type="warning")

            status, next_index = next_step(tx.job)
            tx.job.status = status
            tx.job.current_series_index = next_index
            tx.progress(self._status_message(status))
            needs_search = status == "series_approval" and not tx.job.group(next_index).search_results

        if status == "fetching_issues":
            self.processor.schedule(job_id)
        elif needs_search:
            return await self._search_current(job_id)
        return tx.job

    async def navigate_to_group(self, job_id: str, index: int) -> Job:
        """Go back from review to a group, keeping its selected series."""
        return await self._return_to_group(job_id, index, clear_selection=False)

    async def reset_group(self, job_id: str, index: int) -> Job:
        """Go back from review to a group and forget its series."""
        return await self._return_to_group(job_id, index, clear_selection=True)

    async def _return_to_group(self, job_id: str, index: int, clear_selection: bool) -> Job:
        async with self._mutate(job_id, "file_review") as tx:
            group = tx.job.group(index)
            file_ids = set(group.file_ids)
            tx.job.state.file_changes = [change for change in tx.job.file_changes if change.file_id not in file_ids]
            approval.reset_group(group, clear_selection)
            group.search_results = []
            group.pagination = None
            tx.job.current_series_index = index
            tx.job.status = "series_approval"
            action = "Reset" if clear_selection else "Reopened"
            tx.log(f"{action} series {group.display_name}")
            tx.progress("Waiting for series approval", group.display_name)
        return await self._search_current(job_id)

    async def _search_current(self, job_id: str) -> Job:
        """Run the automatic search for the current group and store its results."""
        job = await self.store.load(job_id)
        index = job.current_series_index
        group = job.current_group()
        error = await self.processor.auto_search(group, job.options)

        async with self._mutate(job_id, "series_approval") as tx:
            if tx.job.current_series_index != index:
                return tx.job
            tx.job.state.series_groups[index] = group
            if error:
                tx.log(f"Search failed for {group.display_name}", detail=error, type="warning")
        return tx.job

    @staticmethod
    def _status_message(status: JobStatus) -> str:
        return {
            "series_approval": "Waiting for series approval",
            "fetching_issues": "Fetching issues",
            "file_review": "Ready for review",
        }.get(status, status)

    # =========================================================================
    # File review
    # =========================================================================

    async def available_issues(self, job_id: str, file_id: str) -> list[IssueRecord]:
        """Issues of the issue-matching series of the file's group."""
        job = await self.store.load(job_id)
        change = approval.find_file_change(job.file_changes, file_id)
        series = job.group(change.group_index).issue_series()
        if series is None:
            raise InvalidRequestError("The file's series group has no selected series")
        return await self.processor.issues_for_series(job_id, series)

    async def update_field_approvals(self, job_id: str, file_id: str, updates: dict[str, FieldUpdate]) -> FileChange:
        async with self._mutate(job_id, "file_review") as tx:
            change = approval.find_file_change(tx.job.file_changes, file_id)
            approval.update_field_approvals(change, updates)
            tx.log(f"Updated {len(updates)} field(s)", detail=change.filename)
        return change

    async def manual_select_issue(self, job_id: str, file_id: str, issue_id: str) -> FileChange:
        issues = await self.available_issues(job_id, file_id)
        issue = next((item for item in issues if item.source_id == issue_id), None)
        if issue is None:
            raise InvalidRequestError(f"Issue {issue_id} is not part of the series")

        async with self._mutate(job_id, "file_review") as tx:
            change = approval.find_file_change(tx.job.file_changes, file_id)
            group = tx.job.group(change.group_index)
            approval.manual_select_issue(change, issue, group, tx.job.options.cleanup_mode)
            tx.log(f"Selected issue #{issue.number or '?'}", detail=change.filename)
        return change

    async def accept_all_fields(self, job_id: str, file_id: str) -> FileChange:
        async with self._mutate(job_id, "file_review") as tx:
            change = approval.find_file_change(tx.job.file_changes, file_id)
            approval.accept_all_fields(change)
        return change

    async def reject_file(self, job_id: str, file_id: str) -> FileChange:
        async with self._mutate(job_id, "file_review") as tx:
            change = approval.reject_file(approval.find_file_change(tx.job.file_changes, file_id))
            tx.log("File rejected", detail=change.filename, type="warning")
        return change

    async def restore_file(self, job_id: str, file_id: str) -> FileChange:
        async with self._mutate(job_id, "file_review") as tx:
            change = approval.restore_file(approval.find_file_change(tx.job.file_changes, file_id))
            tx.log("File restored", detail=change.filename)
        return change

    async def move_file_to_group(self, job_id: str, file_id: str, group_index: int) -> FileChange:
        """Move a file to another series group and re-match it there."""
        job = await self.store.load(job_id)
        require_status(job, "file_review")
        change = approval.find_file_change(job.file_changes, file_id)
        target = job.group(group_index)
        if change.group_index == group_index:
            return change
        if target.status != "matched" or target.issue_series() is None:
            raise InvalidRequestError("Files can only be moved to a series group with an approved series")
        issues = await self.processor.issues_for_series(job_id, target.issue_series())  # type: ignore[arg-type]

        async with self._mutate(job_id, "file_review") as tx:
            current = approval.find_file_change(tx.job.file_changes, file_id)
            source = tx.job.group(current.group_index)
            target = tx.job.group(group_index)
            if file_id in source.file_ids:
                position = source.file_ids.index(file_id)
                source.file_ids.pop(position)
                source.filenames.pop(position)
                if not source.file_ids:
                    source.status = "skipped"
                    tx.log(f"{source.display_name} has no files left and will be skipped")
            target.file_ids.append(file_id)
            target.filenames.append(current.filename)
            if file_id in source.parse_failed_file_ids:
                source.parse_failed_file_ids.remove(file_id)
                target.parse_failed_file_ids.append(file_id)

            moved = approval.build_file_change(
                JobFile(file_id=file_id, path=current.file_path),
                group_index,
                target,
                issues,
                current.current_metadata,
                tx.job.options.cleanup_mode,
                self.config,
            )
            others = [item for item in tx.job.file_changes if item.file_id != file_id]
            tx.job.state.file_changes = sort_file_changes([*others, moved])
            tx.log(f"Moved to {target.display_name}", detail=moved.filename)
        return moved

    async def accept_all_files(self, job_id: str, file_ids: list[str] | None = None) -> int:
        async with self._mutate(job_id, "file_review") as tx:
            count = approval.accept_all_files(tx.job.file_changes, file_ids)
            tx.log(f"Accepted all fields on {count} file(s)")
        return count

    async def reject_all_files(self, job_id: str, file_ids: list[str] | None = None) -> int:
        async with self._mutate(job_id, "file_review") as tx:
            count = approval.reject_all_files(tx.job.file_changes, file_ids)
            tx.log(f"Rejected {count} file(s)", type="warning")
        return count

    async def accept_high_confidence(
        self, job_id: str, threshold: float = 0.8, file_ids: list[str] | None = None
    ) -> int:
        async with self._mutate(job_id, "file_review") as tx:
            count = approval.accept_high_confidence(tx.job.file_changes, threshold, file_ids)
            tx.log(f"Accepted {count} file(s) with confidence of at least {threshold:.0%}")
        return count

    async def update_series_sources(
        self,
        job_id: str,
        group_index: int,
        accepted_sources: list[str] | None = None,
        field_overrides: dict[str, str] | None = None,
    ) -> Job:
        """Re-merge a group's series from confirmed sources and per-field picks.

        ``accepted_sources`` replaces the confirmed cross-source matches when
        given; ``field_overrides`` adds to the picks made so far. The group's
        file changes are rebuilt in the background from the new merge.
        """
        async with self._mutate(job_id, "file_review") as tx:
            group = tx.job.group(group_index)
            if group.selected_series is None or group.cross_source is None:
                raise InvalidRequestError("The series group has no cross-source matches")

            previous = group.merged_series
            if accepted_sources is None:
                accepted_sources = previous.accepted_sources if previous else []
            matched = {match.source for match in group.cross_source.matches}
            unknown = sorted(set(accepted_sources) - matched)
            if unknown:
                raise InvalidRequestError(f"No cross-source match from: {', '.join(unknown)}")

            overrides = {**(previous.field_source_overrides if previous else {}), **(field_overrides or {})}
            unknown_fields = sorted(set(overrides) - set(SERIES_FIELDS))
            if unknown_fields:
                raise InvalidRequestError(f"Unknown series field(s): {', '.join(unknown_fields)}")

            group.merged_series = merge_series_all_values(
                group.selected_series,
                group.cross_source.matches,
                priority=self.registry.priority,
                auto_apply_high_confidence=tx.job.options.auto_apply_high_confidence,
                accepted_sources=accepted_sources,
                overrides=overrides,
            )
            file_ids = set(group.file_ids)
            tx.job.state.file_changes = [change for change in tx.job.file_changes if change.file_id not in file_ids]
            tx.job.status = "fetching_issues"
            sources = ", ".join(group.merged_series.contributing_sources)
            tx.log(f"Updated merged metadata for {group.display_name}", detail=f"Sources: {sources}")
            tx.progress("Fetching issues", group.display_name)
        self.processor.schedule(job_id)
        return tx.job

    # =========================================================================
    # Apply
    # =========================================================================

    async def start_apply(self, job_id: str) -> Job:
        async with self._mutate(job_id, "file_review") as tx:
            pending = sum(1 for change in tx.job.file_changes if change.has_pending_changes())
            tx.job.status = "applying"
            tx.job.apply_result = ApplyResult()
            tx.job.state.apply_progress = None
            tx.log(f"Applying changes to {pending} file(s)")
            tx.progress("Applying")
        self.processor.schedule(job_id)
        return tx.job
