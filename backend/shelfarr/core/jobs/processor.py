"""Background steps of a metadata job.

A job moves through three steps that run outside any request: initializing
(group the files and search the first series), fetching_issues (fetch issue
lists and build file change sets) and applying. Each step works from the
persisted job, so a step interrupted by a restart is simply run again.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from shelfarr.core.approval import (
    ApplyExecutor,
    ApplyProgress,
    ApplyResult,
    FileChange,
    JobOptions,
    SeriesGroup,
    build_file_change,
    group_files,
    next_pending_index,
    search_series,
    search_sources,
    suggest_series,
)
from shelfarr.core.comicinfo import ComicInfo, read_comicinfo
from shelfarr.core.config import Settings, get_settings
from shelfarr.core.cross_source import CrossSourceMatcher, CrossSourceResult, match_issue_lists
from shelfarr.core.exceptions import (
    ArchiveError,
    JobConflictError,
    JobNotFoundError,
    ShelfarrError,
    SourceConfigurationError,
    SourceError,
)
from shelfarr.core.matching import MatchingConfig, get_matching_config, match_count_summary
from shelfarr.core.merge import MergedSeriesMetadata, merge_issues, merge_series_all_values
from shelfarr.core.metrics import metadata_jobs_active
from shelfarr.core.sources.models import IssueRecord, SeriesMatch
from shelfarr.core.sources.registry import SourceRegistry
from shelfarr.core.tracing import job_context

from .models import TERMINAL_STATUSES, Job, JobStatus
from .store import JobStore

logger = structlog.get_logger("shelfarr.jobs.processor")

_issue_list = TypeAdapter(list[IssueRecord])

AUTO_SEARCH_LIMIT = 10


class StepCancelled(Exception):
    """The job was cancelled while a step was running."""


def error_message(exc: BaseException) -> str:
    if isinstance(exc, SourceConfigurationError):
        return f"{exc.message}. {exc.hint}"
    if isinstance(exc, SourceError):
        return f"{exc.source}: {exc.message}"
    return str(exc) or type(exc).__name__


def next_step(job: Job) -> tuple[JobStatus, int]:
    """Where a job goes once the current series is settled.

    Pending groups come first; then any matched group still without file
    changes needs its issues fetched; otherwise the job is ready for review.
    """
    pending = next_pending_index(job.groups)
    if pending is not None:
        return "series_approval", pending
    reviewed = {change.file_id for change in job.file_changes}
    for group in job.groups:
        if group.status == "matched" and any(file_id not in reviewed for file_id in group.file_ids):
            return "fetching_issues", job.current_series_index
    return "file_review", job.current_series_index


def sort_file_changes(changes: Sequence[FileChange]) -> list[FileChange]:
    return sorted(changes, key=lambda change: (change.group_index, change.filename.casefold()))


class JobProcessor:
    """Runs and recovers background steps, one task per job."""

    def __init__(
        self,
        store: JobStore,
        registry: SourceRegistry,
        settings: Settings | None = None,
        config: MatchingConfig | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self.config = config or get_matching_config()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._steps: dict[str, Callable[[Job], Awaitable[None]]] = {
            "initializing": self.initialize,
            "fetching_issues": self.fetch_issues,
            "applying": self.apply,
        }

    # -- task bookkeeping ------------------------------------------------------

    def cancel_event(self, job_id: str) -> asyncio.Event:
        event = self._cancel_events.get(job_id)
        if event is None:
            event = asyncio.Event()
            self._cancel_events[job_id] = event
        return event

    def request_cancel(self, job_id: str) -> None:
        """Stop issuing new source queries for a job; in-flight ones finish."""
        self.cancel_event(job_id).set()

    def forget(self, job_id: str) -> None:
        self._cancel_events.pop(job_id, None)

    def schedule(self, job_id: str) -> asyncio.Task[None]:
        """Start the job's background step unless one is already running."""
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self.run(job_id))
        self._tasks[job_id] = task
        return task

    async def wait(self, job_id: str) -> None:
        """Wait for the job's background step, if any."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

    async def recover_active_jobs(self) -> int:
        """Restart steps of jobs that were running when the process stopped."""
        job_ids = await self.store.ids_in_status()
        for job_id in job_ids:
            logger.info("Recovering metadata job", job_id=job_id)
            self.schedule(job_id)
        if not job_ids:
            logger.info("No metadata jobs to recover")
        return len(job_ids)

    async def run(self, job_id: str) -> None:
        """Run steps until the job reaches a status that waits for the user."""
        metadata_jobs_active.inc()
        try:
            while True:
                job = await self.store.load(job_id)
                step = self._steps.get(job.status)
                if step is None:
                    return
                with job_context(job_id, job.status):
                    await step(job)
                after = await self.store.load(job_id)
                if after.status == job.status:
                    return
        except JobNotFoundError:
            logger.info("Metadata job disappeared while running", job_id=job_id)
        except StepCancelled:
            logger.info("Metadata job step stopped after cancellation", job_id=job_id)
        except JobConflictError as exc:
            logger.warning("Metadata job step lost a concurrent update", job_id=job_id, error=str(exc))
        except Exception as exc:
            logger.exception("Metadata job step failed", job_id=job_id)
            await self.fail(job_id, exc)
        finally:
            metadata_jobs_active.dec()

    async def fail(self, job_id: str, exc: BaseException) -> None:
        """Move a job to error, keeping the message and logging it."""
        try:
            async with self.store.transaction(job_id) as tx:
                if tx.job.status in TERMINAL_STATUSES:
                    return
                message = error_message(exc)
                tx.log(f"Job failed: {message}", detail=type(exc).__name__, type="error")
                tx.job.status = "error"
                tx.job.error = message
                tx.job.completed_at = int(time.time())
                tx.progress("Failed", message)
        except (ShelfarrError, SQLAlchemyError) as store_error:
            logger.error("Could not record job failure", job_id=job_id, error=str(store_error))

    # -- shared helpers ----------------------------------------------------------

    async def auto_search(self, group: SeriesGroup, options: JobOptions) -> str | None:
        """Search a group with its synthesized query.

        Returns an error message when the search failed; the group is left
        without results so the user can search manually.
        """
        sources = search_sources(self.registry, options)
        try:
            result = await search_series(
                self.registry, group.query, sources, limit=AUTO_SEARCH_LIMIT, config=self.config
            )
        except SourceError as exc:
            logger.warning("Automatic series search failed", series=group.display_name, error=exc.message)
            return error_message(exc)

        group.search_query = group.query.text()
        group.search_source = None
        group.search_results = result.results
        group.pagination = result.pagination
        if group.selected_series is None:
            group.selected_series = suggest_series(group, self.config)
        return None

    async def cross_match(
        self, job_id: str, series: SeriesMatch, options: JobOptions
    ) -> tuple[CrossSourceResult, MergedSeriesMetadata]:
        matcher = CrossSourceMatcher(
            self.registry,
            concurrency=self.settings.cross_source_concurrency,
            timeout=self.settings.source_timeout_seconds,
            config=self.config,
        )
        result = await matcher.find_matches(series, cancel_event=self.cancel_event(job_id))
        merged = merge_series_all_values(
            series,
            result.matches,
            priority=self.registry.priority,
            auto_apply_high_confidence=options.auto_apply_high_confidence,
        )
        return result, merged

    def _issue_cache_path(self, job_id: str, series: SeriesMatch) -> Path:
        return self.settings.jobs_dir / job_id / "issues" / f"{series.source}-{series.source_id}.json"

    def _read_issue_cache(self, path: Path) -> list[IssueRecord] | None:
        if not path.exists():
            return None
        try:
            return _issue_list.validate_json(path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.debug("Ignoring unreadable issue cache", path=str(path), error=str(exc))
            return None

    def _write_issue_cache(self, path: Path, issues: list[IssueRecord]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(_issue_list.dump_json(issues))

    async def issues_for_series(self, job_id: str, series: SeriesMatch) -> list[IssueRecord]:
        """Issue list of a series, cached in the job's temp directory."""
        path = self._issue_cache_path(job_id, series)
        cached = await asyncio.to_thread(self._read_issue_cache, path)
        if cached is not None:
            return cached

        adapter = self.registry.get(series.source)
        if adapter is None:
            raise SourceConfigurationError(series.source, f"Metadata source '{series.source}' is not enabled")
        adapter.require_configured()
        issues = await adapter.fetch_issues(series.source_id)
        await asyncio.to_thread(self._write_issue_cache, path, issues)
        logger.debug("Issue list fetched", source=series.source, series_id=series.source_id, issues=len(issues))
        return issues

    async def _issue_counterparts(
        self, job: Job, group: SeriesGroup, issues: list[IssueRecord]
    ) -> dict[str, list[IssueRecord]]:
        """Same issues in the other sources that contributed to the merged series.

        Returns a mapping of primary issue id to its counterparts.
        """
        merged, cross = group.merged_series, group.cross_source
        selected, issue_series = group.selected_series, group.issue_series()
        if merged is None or cross is None or selected is None:
            return {}
        if issue_series is None or issue_series.key != selected.key:
            return {}

        counterparts: dict[str, list[IssueRecord]] = {}
        for source in merged.contributing_sources:
            match = cross.match_for(source)
            if source == selected.source or match is None:
                continue
            if self.cancel_event(job.id).is_set():
                raise StepCancelled()
            try:
                secondary = await self.issues_for_series(job.id, match.series)
            except SourceError as exc:
                logger.warning("Could not fetch cross-source issues", source=source, error=exc.message)
                continue
            for primary_id, issue in match_issue_lists(issues, secondary, self.config).items():
                counterparts.setdefault(primary_id, []).append(issue)
        return counterparts

    async def _detailed_issue(self, issue: IssueRecord) -> IssueRecord | None:
        adapter = self.registry.get(issue.source)
        if adapter is None:
            return None
        try:
            return await adapter.fetch_issue(issue.source_id)
        except SourceError as exc:
            logger.debug("Issue details unavailable", source=issue.source, issue_id=issue.source_id, error=exc.message)
            return None

    async def _ensure_cross_source(self, job: Job, index: int, group: SeriesGroup) -> None:
        if not job.options.cross_source_matching or group.selected_series is None or group.cross_source is not None:
            return
        result, merged = await self.cross_match(job.id, group.selected_series, job.options)
        async with self.store.transaction(job.id) as tx:
            if tx.job.status != "fetching_issues":
                raise StepCancelled()
            stored = tx.job.group(index)
            stored.cross_source = result
            stored.merged_series = merged
            tx.log(f"Cross-source matching for {group.display_name}: {result.summary}")
        group.cross_source = result
        group.merged_series = merged

    # -- steps -----------------------------------------------------------------

    async def initialize(self, job: Job) -> None:
        """Group the files and search the first series that needs approval."""
        files = job.active_files()
        if not files:
            async with self.store.transaction(job.id) as tx:
                if tx.job.status != "initializing":
                    return
                tx.log("No files to process after exclusions", type="error")
                tx.job.status = "error"
                tx.job.error = "No files to process after exclusions"
                tx.job.completed_at = int(time.time())
            return

        groups = await asyncio.to_thread(group_files, files, job.options.mixed_series)
        pending = next_pending_index(groups)
        search_error = None
        if pending is not None and not self.cancel_event(job.id).is_set():
            search_error = await self.auto_search(groups[pending], job.options)

        async with self.store.transaction(job.id) as tx:
            if tx.job.status != "initializing":
                return
            tx.job.state.series_groups = groups
            tx.job.state.file_changes = []
            tx.log(f"Grouped {len(files)} file(s) into {len(groups)} series", type="success")
            for group in groups:
                if group.pre_approved_from_marker:
                    tx.log(f"{group.display_name}: series taken from series.json")
                elif group.pre_approved_from_cache:
                    tx.log(f"{group.display_name}: series taken from the folder's series cache")
                for file_id, filename in zip(group.file_ids, group.filenames, strict=True):
                    if file_id in group.parse_failed_file_ids:
                        tx.log("Could not parse filename", detail=filename, type="warning")

            if pending is None:
                tx.job.status = "fetching_issues"
                tx.job.current_series_index = 0
                tx.progress("Fetching issues for pre-approved series")
                return

            name = groups[pending].display_name
            if search_error:
                tx.log(f"Search failed for {name}", detail=search_error, type="warning")
            tx.job.status = "series_approval"
            tx.job.current_series_index = pending
            tx.progress("Waiting for series approval", name)

    async def fetch_issues(self, job: Job) -> None:
        """Build file change sets for every matched group that lacks them, then move on."""
        reviewed = {change.file_id for change in job.file_changes}
        targets = [
            (index, group)
            for index, group in enumerate(job.groups)
            if group.status == "matched" and any(file_id not in reviewed for file_id in group.file_ids)
        ]

        for index, group in targets:
            if self.cancel_event(job.id).is_set():
                raise StepCancelled()
            await self._ensure_cross_source(job, index, group)
            changes, notes = await self._build_group_changes(job, index, group)

            async with self.store.transaction(job.id) as tx:
                if tx.job.status != "fetching_issues":
                    raise StepCancelled()
                file_ids = set(group.file_ids)
                kept = [change for change in tx.job.file_changes if change.file_id not in file_ids]
                tx.job.state.file_changes = sort_file_changes([*kept, *changes])
                for message, detail, kind in notes:
                    tx.log(message, detail=detail, type=kind)  # type: ignore[arg-type]
                matched = sum(1 for change in changes if change.status == "matched")
                tx.log(
                    f"{group.display_name}: {match_count_summary(matched, len(changes))}",
                    type="success" if matched == len(changes) else "warning",
                )
                tx.progress(f"Fetched issues for {group.display_name}")

        job = await self.store.load(job.id)
        status, index = next_step(job)
        searched: SeriesGroup | None = None
        search_error = None
        if status == "series_approval" and not job.group(index).search_results:
            searched = job.group(index)
            search_error = await self.auto_search(searched, job.options)

        async with self.store.transaction(job.id) as tx:
            if tx.job.status != "fetching_issues":
                raise StepCancelled()
            if status == "series_approval":
                if searched is not None:
                    tx.job.state.series_groups[index] = searched
                name = tx.job.group(index).display_name
                if search_error:
                    tx.log(f"Search failed for {name}", detail=search_error, type="warning")
                tx.job.current_series_index = index
                tx.job.status = "series_approval"
                tx.progress("Waiting for series approval", name)
            elif status == "file_review":
                tx.job.status = "file_review"
                tx.log(f"{len(tx.job.file_changes)} file(s) ready for review", type="success")
                tx.progress("Ready for review")

    async def _build_group_changes(
        self, job: Job, index: int, group: SeriesGroup
    ) -> tuple[list[FileChange], list[tuple[str, str | None, str]]]:
        """Match each file of a group to an issue and diff it against its ComicInfo.

        Matched issues are completed with the source's per-issue details and
        with the same issue from the other contributing sources.
        """
        notes: list[tuple[str, str | None, str]] = []
        issue_series = group.issue_series()
        issues: list[IssueRecord] = []
        if issue_series is not None:
            try:
                issues = await self.issues_for_series(job.id, issue_series)
            except SourceError as exc:
                notes.append((f"Could not fetch issues for {group.display_name}", error_message(exc), "warning"))
        counterparts = await self._issue_counterparts(job, group, issues)

        enriched: dict[str, IssueRecord] = {}

        async def enrich(issue: IssueRecord) -> IssueRecord:
            if issue.source_id not in enriched:
                base = await self._detailed_issue(issue) or issue
                others = counterparts.get(issue.source_id)
                enriched[issue.source_id] = merge_issues(base, others, self.registry.priority) if others else base
            return enriched[issue.source_id]

        changes: list[FileChange] = []
        for file_id in group.file_ids:
            file = job.file(file_id)
            try:
                current = await asyncio.to_thread(read_comicinfo, file.path) or ComicInfo()
            except ArchiveError as exc:
                notes.append(("Could not read existing metadata", f"{file.filename}: {exc.message}", "warning"))
                current = ComicInfo()

            change = build_file_change(file, index, group, issues, current, job.options.cleanup_mode, self.config)
            if change.matched_issue is not None:
                full = await enrich(change.matched_issue)
                if full is not change.matched_issue:
                    candidates = [full if item.source_id == full.source_id else item for item in issues]
                    change = build_file_change(
                        file, index, group, candidates, current, job.options.cleanup_mode, self.config
                    )

            if change.status == "unmatched":
                notes.append(("No matching issue found; series defaults proposed", file.filename, "warning"))
            changes.append(change)
        return changes, notes

    async def apply(self, job: Job) -> None:
        """Write approved changes, persisting progress after each file."""
        cancel = self.cancel_event(job.id)
        executor: ApplyExecutor

        async def persist(progress: ApplyProgress, result: ApplyResult) -> None:
            if cancel.is_set():
                raise StepCancelled()
            async with self.store.transaction(job.id) as tx:
                if tx.job.status != "applying":
                    raise StepCancelled()
                tx.job.state.apply_progress = progress
                tx.job.state.file_changes = executor.changes
                tx.job.apply_result = result
                tx.progress(
                    f"{progress.phase.replace('_', ' ').capitalize()} {progress.current}/{progress.total}",
                    progress.current_file,
                )

        executor = ApplyExecutor(
            job.file_changes,
            job.groups,
            job.options,
            result=job.apply_result,
            on_progress=persist,
        )
        result = await executor.run()

        async with self.store.transaction(job.id) as tx:
            if tx.job.status != "applying":
                raise StepCancelled()
            tx.job.state.file_changes = executor.changes
            tx.job.state.apply_progress = None
            tx.job.apply_result = result
            for item in result.results:
                if not item.success:
                    tx.log("Failed to write metadata", detail=f"{item.filename}: {item.error}", type="error")
            if result.failed:
                tx.log(f"Applied metadata to {result.successful} file(s); {result.failed} failed", type="warning")
            else:
                tx.log(
                    f"Applied metadata to {result.successful} file(s); {result.skipped} skipped",
                    type="success",
                )
            tx.job.status = "complete"
            tx.job.completed_at = int(time.time())
            tx.progress("Complete")
