"""Write approved metadata into archives."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

import structlog

from shelfarr.core.comicinfo import convert_cbr_to_cbz, merge_comicinfo
from shelfarr.core.exceptions import ArchiveError
from shelfarr.core.metrics import metadata_apply_files_total
from shelfarr.core.series_marker import SeriesMarker, write_series_cache, write_series_marker
from shelfarr.core.utils import CBR_EXTENSIONS

from .models import ApplyFileResult, ApplyProgress, ApplyResult, FileChange, JobOptions, SeriesGroup

logger = structlog.get_logger("shelfarr.approval.apply")

ProgressCallback = Callable[[ApplyProgress, ApplyResult], Awaitable[None]]


async def _no_progress(progress: ApplyProgress, result: ApplyResult) -> None:
    return None


def determine_authoritative_publisher(
    groups: Sequence[SeriesGroup],
    changes: Sequence[FileChange],
) -> str | None:
    """Publisher to record for a set of groups.

    The selected series' publisher wins; otherwise the most common approved
    publisher across the non-rejected files.
    """
    for group in groups:
        series = group.metadata_series()
        if series is not None and series.publisher:
            return series.publisher

    counts: Counter[str] = Counter()
    for change in changes:
        if change.status == "rejected":
            continue
        field = change.fields.get("publisher")
        if field is not None and (field.approved or field.edited):
            value = field.final_value()
            if value:
                counts[value] += 1
    if not counts:
        return None
    return counts.most_common(1)[0][0]


class ApplyExecutor:
    """Runs the converting, writing and series_marker phases over a job's files.

    Files that already have a successful result are not written again, so a
    restarted apply picks up where the previous run stopped.
    """

    def __init__(
        self,
        changes: list[FileChange],
        groups: Sequence[SeriesGroup],
        options: JobOptions,
        result: ApplyResult | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.changes = changes
        self.groups = groups
        self.options = options
        self.result = result or ApplyResult()
        self.on_progress = on_progress or _no_progress
        self._failed: set[str] = set()

    def _done(self, change: FileChange) -> bool:
        previous = self.result.result_for(change.file_id)
        return previous is not None and (previous.success or previous.skipped)

    def _record(self, result: ApplyFileResult, outcome: str) -> None:
        self.result.record(result)
        if not result.success:
            self._failed.add(result.file_id)
        metadata_apply_files_total.labels(outcome=outcome).inc()

    async def run(self) -> ApplyResult:
        eligible: list[FileChange] = []
        for change in self.changes:
            if self._done(change):
                continue
            if change.has_pending_changes():
                eligible.append(change)
            else:
                reason = "rejected" if change.status == "rejected" else "no approved changes"
                logger.info("Skipping file", file_id=change.file_id, filename=change.filename, reason=reason)
                self._record(
                    ApplyFileResult(
                        file_id=change.file_id,
                        filename=change.filename,
                        success=True,
                        skipped=True,
                        error=reason,
                    ),
                    "skipped",
                )

        converted = await self._convert(eligible)
        await self._write(eligible, converted)
        await self._write_series_markers()
        return self.result

    async def _convert(self, eligible: list[FileChange]) -> set[str]:
        cbr_files = [change for change in eligible if Path(change.file_path).suffix.lower() in CBR_EXTENSIONS]
        converted: set[str] = set()
        if not cbr_files:
            return converted

        for index, change in enumerate(cbr_files, start=1):
            progress = ApplyProgress(
                phase="converting", current=index, total=len(cbr_files), current_file=change.filename
            )
            await self.on_progress(progress, self.result)

            if not self.options.convert_cbr_to_cbz:
                self._record(
                    ApplyFileResult(
                        file_id=change.file_id,
                        filename=change.filename,
                        success=False,
                        error="CBR archives are read-only; enable CBR to CBZ conversion to write metadata",
                    ),
                    "failed",
                )
                continue

            try:
                new_path = await asyncio.to_thread(convert_cbr_to_cbz, change.file_path)
            except ArchiveError as exc:
                self.result.conversion_failed += 1
                logger.warning("Conversion failed", file_id=change.file_id, path=change.file_path, error=exc.message)
                self._record(
                    ApplyFileResult(
                        file_id=change.file_id,
                        filename=change.filename,
                        success=False,
                        error=f"Conversion failed: {exc.message}",
                    ),
                    "failed",
                )
                continue
            except Exception as exc:
                self.result.conversion_failed += 1
                logger.exception("Unexpected conversion error", file_id=change.file_id, path=change.file_path)
                self._record(
                    ApplyFileResult(
                        file_id=change.file_id,
                        filename=change.filename,
                        success=False,
                        error=f"Conversion failed: {exc}",
                    ),
                    "failed",
                )
                continue

            change.file_path = str(new_path)
            change.filename = new_path.name
            converted.add(change.file_id)

        return converted

    async def _write(self, eligible: list[FileChange], converted: set[str]) -> None:
        writable = [change for change in eligible if change.file_id not in self._failed]
        for index, change in enumerate(writable, start=1):
            progress = ApplyProgress(phase="writing", current=index, total=len(writable), current_file=change.filename)
            await self.on_progress(progress, self.result)

            updates = {name: field.final_value() for name, field in change.actionable_fields().items()}
            try:
                await asyncio.to_thread(merge_comicinfo, change.file_path, updates)
            except ArchiveError as exc:
                logger.warning("Metadata write failed", file_id=change.file_id, path=change.file_path, error=exc.message)
                self._record(
                    ApplyFileResult(
                        file_id=change.file_id,
                        filename=change.filename,
                        success=False,
                        error=exc.message,
                        converted=change.file_id in converted,
                    ),
                    "failed",
                )
                continue
            except Exception as exc:
                logger.exception("Unexpected metadata write error", file_id=change.file_id, path=change.file_path)
                self._record(
                    ApplyFileResult(
                        file_id=change.file_id,
                        filename=change.filename,
                        success=False,
                        error=f"Unexpected error: {exc}",
                        converted=change.file_id in converted,
                    ),
                    "failed",
                )
                continue

            logger.info("Metadata written", file_id=change.file_id, filename=change.filename, fields=sorted(updates))
            self._record(
                ApplyFileResult(
                    file_id=change.file_id,
                    filename=change.filename,
                    success=True,
                    converted=change.file_id in converted,
                ),
                "written",
            )
        if writable:
            await self.on_progress(
                ApplyProgress(phase="writing", current=len(writable), total=len(writable)), self.result
            )

    async def _write_series_markers(self) -> None:
        if not self.options.create_series_marker:
            return

        by_folder: dict[str, list[SeriesGroup]] = {}
        for group in self.groups:
            if group.status != "skipped" and group.selected_series is not None and group.file_ids:
                by_folder.setdefault(group.folder_path, []).append(group)

        folders = list(by_folder.items())
        for index, (folder, groups) in enumerate(folders, start=1):
            await self.on_progress(
                ApplyProgress(phase="series_marker", current=index, total=len(folders), current_file=folder),
                self.result,
            )
            file_ids = {file_id for group in groups for file_id in group.file_ids}
            folder_changes = [change for change in self.changes if change.file_id in file_ids]
            try:
                if self.options.mixed_series or len(groups) > 1:
                    await asyncio.to_thread(
                        write_series_cache,
                        folder,
                        {
                            group.display_name: (group.selected_series, group.issue_matching_series)
                            for group in groups
                            if group.selected_series is not None
                        },
                    )
                else:
                    group = groups[0]
                    if group.pre_approved_from_marker:
                        continue
                    assert group.selected_series is not None
                    marker = SeriesMarker.from_series(
                        group.selected_series,
                        group.issue_matching_series,
                        publisher=determine_authoritative_publisher(groups, folder_changes),
                    )
                    await asyncio.to_thread(write_series_marker, folder, marker)
            except OSError as exc:
                logger.warning("Could not write series marker", folder=folder, error=str(exc))
