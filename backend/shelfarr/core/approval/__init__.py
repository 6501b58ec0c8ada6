"""Series approval, file review and apply for metadata jobs."""

from shelfarr.core.approval.apply import ApplyExecutor, determine_authoritative_publisher
from shelfarr.core.approval.fields import build_field_changes, issue_to_fields, series_to_fields
from shelfarr.core.approval.file_review import (
    accept_all_fields,
    accept_all_files,
    accept_high_confidence,
    build_file_change,
    find_file_change,
    manual_select_issue,
    reject_all_files,
    reject_file,
    restore_file,
    update_field_approvals,
)
from shelfarr.core.approval.grouping import group_files
from shelfarr.core.approval.models import (
    ApplyFileResult,
    ApplyProgress,
    ApplyResult,
    ClearedToNull,
    FieldChange,
    FieldEdit,
    FieldUpdate,
    FileChange,
    JobFile,
    JobOptions,
    SeriesGroup,
    SetValue,
    Unedited,
)
from shelfarr.core.approval.series_approval import (
    SeriesSelection,
    apply_to_remaining,
    find_in_results,
    merge_search_results,
    next_pending_index,
    reset_group,
    search_series,
    search_sources,
    suggest_series,
)

__all__ = [
    "ApplyExecutor",
    "determine_authoritative_publisher",
    "build_field_changes",
    "issue_to_fields",
    "series_to_fields",
    "accept_all_fields",
    "accept_all_files",
    "accept_high_confidence",
    "build_file_change",
    "find_file_change",
    "manual_select_issue",
    "reject_all_files",
    "reject_file",
    "restore_file",
    "update_field_approvals",
    "group_files",
    "ApplyFileResult",
    "ApplyProgress",
    "ApplyResult",
    "ClearedToNull",
    "FieldChange",
    "FieldEdit",
    "FieldUpdate",
    "FileChange",
    "JobFile",
    "JobOptions",
    "SeriesGroup",
    "SetValue",
    "Unedited",
    "SeriesSelection",
    "apply_to_remaining",
    "find_in_results",
    "merge_search_results",
    "next_pending_index",
    "reset_group",
    "search_series",
    "search_sources",
    "suggest_series",
]
