"""File-level review: building change sets and the user's edits to them.

Everything here is synchronous and works on in-memory models; the job
service loads and persists them around each call.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Literal

import structlog

from shelfarr.core.comicinfo import ComicInfo, is_comicinfo_field
from shelfarr.core.exceptions import InvalidRequestError, ShelfarrError
from shelfarr.core.filename_parser import parse_filename
from shelfarr.core.matching import MatchingConfig, get_matching_config, match_file_to_issue
from shelfarr.core.sources.models import IssueRecord

from .fields import build_field_changes, issue_to_fields, series_to_fields
from .models import FieldChange, FieldUpdate, FileChange, JobFile, SeriesGroup

logger = structlog.get_logger("shelfarr.approval.file_review")


def build_file_change(
    file: JobFile,
    group_index: int,
    group: SeriesGroup,
    issues: Sequence[IssueRecord],
    current: ComicInfo,
    cleanup_mode: Literal["merge", "replace"] = "merge",
    config: MatchingConfig | None = None,
) -> FileChange:
    """Match a file to an issue of its group and diff the result."""
    if config is None:
        config = get_matching_config()

    parsed = parse_filename(file.filename)
    change = FileChange(
        file_id=file.file_id,
        filename=file.filename,
        file_path=file.path,
        group_index=group_index,
        parse_failed=parsed.parse_failed,
        current_metadata=current,
    )

    series = group.metadata_series()
    if group.status == "skipped" or series is None:
        change.status = "rejected"
        return change

    issue, confidence = match_file_to_issue(parsed, issues, group.issue_series(), config)
    if issue is not None and confidence >= config.file_match_threshold:
        change.status = "matched"
        change.confidence = confidence
        change.matched_issue = issue
        change.fields = build_field_changes(current, issue_to_fields(issue, series), cleanup_mode)
    else:
        change.status = "unmatched"
        change.confidence = confidence
        change.fields = build_field_changes(current, series_to_fields(series), cleanup_mode)
    return change


def find_file_change(changes: Sequence[FileChange], file_id: str) -> FileChange:
    for change in changes:
        if change.file_id == file_id:
            return change
    raise InvalidRequestError(f"File {file_id} is not part of this job")


def update_field_approvals(change: FileChange, updates: dict[str, FieldUpdate]) -> FileChange:
    """Apply approval flags and edits to a file's fields.

    Any ComicInfo field may be edited, including fields the diff did not
    propose; such a field starts out proposing its current value.
    """
    unknown = [name for name in updates if not is_comicinfo_field(name)]
    if unknown:
        raise InvalidRequestError(f"Unknown metadata field(s): {', '.join(sorted(unknown))}")

    for name, update in updates.items():
        field = change.fields.get(name)
        if field is None:
            current = getattr(change.current_metadata, name)
            field = FieldChange(current=current, proposed=current, approved=False)
            change.fields[name] = field
        if update.approved is not None:
            field.approved = update.approved
        if update.edit is not None:
            field.edit = update.edit
    return change


def accept_all_fields(change: FileChange) -> int:
    """Approve every field; returns how many changed state."""
    count = 0
    for field in change.fields.values():
        if not field.approved:
            field.approved = True
            count += 1
    return count


def reject_file(change: FileChange) -> FileChange:
    """Exclude a file from apply. Field flags are kept for restore."""
    if change.status != "rejected":
        change.status_before_reject = change.status
        change.status = "rejected"
    return change


def restore_file(change: FileChange) -> FileChange:
    """Undo a reject. If no field is approved, all fields are re-approved."""
    if change.status != "rejected":
        return change
    change.status = change.status_before_reject or ("matched" if change.matched_issue else "unmatched")
    change.status_before_reject = None
    if change.fields and not any(field.approved for field in change.fields.values()):
        accept_all_fields(change)
    return change


def manual_select_issue(
    change: FileChange,
    issue: IssueRecord,
    group: SeriesGroup,
    cleanup_mode: Literal["merge", "replace"] = "merge",
) -> FileChange:
    """Pin a file to an issue the user picked."""
    series = group.metadata_series()
    if series is None:
        raise InvalidRequestError("The file's series group has no selected series")
    change.matched_issue = issue
    change.confidence = 1.0
    change.status = "manual"
    change.status_before_reject = None
    change.fields = build_field_changes(change.current_metadata, issue_to_fields(issue, series), cleanup_mode)
    return change


def _for_each(
    changes: Iterable[FileChange],
    file_ids: Iterable[str] | None,
    operation: Callable[[FileChange], bool],
    name: str,
) -> int:
    """Run ``operation`` per file, counting files it reports as affected.

    A failure on one file is logged and does not undo the others.
    """
    wanted = set(file_ids) if file_ids is not None else None
    count = 0
    for change in changes:
        if wanted is not None and change.file_id not in wanted:
            continue
        try:
            if operation(change):
                count += 1
        except ShelfarrError as exc:
            logger.warning("Batch operation skipped file", operation=name, file_id=change.file_id, error=str(exc))
    return count


def accept_all_files(changes: Iterable[FileChange], file_ids: Iterable[str] | None = None) -> int:
    def accept(change: FileChange) -> bool:
        was_rejected = change.status == "rejected"
        if was_rejected and not change.fields:
            return False
        restore_file(change)
        return accept_all_fields(change) > 0 or was_rejected

    return _for_each(changes, file_ids, accept, "accept_all")


def reject_all_files(changes: Iterable[FileChange], file_ids: Iterable[str] | None = None) -> int:
    def reject(change: FileChange) -> bool:
        if change.status == "rejected":
            return False
        reject_file(change)
        return True

    return _for_each(changes, file_ids, reject, "reject_all")


def accept_high_confidence(
    changes: Iterable[FileChange],
    threshold: float = 0.8,
    file_ids: Iterable[str] | None = None,
) -> int:
    """Approve all fields of non-rejected files at or above ``threshold``."""

    def accept(change: FileChange) -> bool:
        if change.status == "rejected" or change.confidence < threshold:
            return False
        accept_all_fields(change)
        return True

    return _for_each(changes, file_ids, accept, "accept_high_confidence")
