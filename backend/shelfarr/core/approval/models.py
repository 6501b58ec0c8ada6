"""Models for series approval, file review and apply."""

from __future__ import annotations

import uuid
from pathlib import PurePath
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, computed_field

from shelfarr.core.comicinfo import ComicInfo
from shelfarr.core.cross_source import CrossSourceResult
from shelfarr.core.merge import MergedSeriesMetadata
from shelfarr.core.sources.models import (
    IssueRecord,
    MetadataSource,
    SearchPagination,
    SeriesMatch,
    SeriesQuery,
)
from shelfarr.core.utils import normalize_field_value

# =============================================================================
# Field edits
# =============================================================================


class Unedited(BaseModel):
    kind: Literal["unedited"] = "unedited"


class ClearedToNull(BaseModel):
    """The user wants the field emptied."""

    kind: Literal["cleared"] = "cleared"


class SetValue(BaseModel):
    kind: Literal["set"] = "set"
    value: str


FieldEdit = Annotated[Unedited | ClearedToNull | SetValue, Field(discriminator="kind")]


class FieldChange(BaseModel):
    """One field's current value, the proposed value and the user's decision."""

    current: str | None = None
    proposed: str | None = None
    approved: bool = True
    edit: FieldEdit = Field(default_factory=Unedited)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def edited(self) -> bool:
        return not isinstance(self.edit, Unedited)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def edited_value(self) -> str | None:
        return self.edit.value if isinstance(self.edit, SetValue) else None

    def final_value(self) -> str | None:
        """Edited value if edited, else proposed if approved, else unchanged."""
        if isinstance(self.edit, SetValue):
            return self.edit.value
        if isinstance(self.edit, ClearedToNull):
            return None
        if self.approved:
            return self.proposed
        return self.current

    def is_actionable(self) -> bool:
        if not self.approved and not self.edited:
            return False
        return normalize_field_value(self.final_value()) != normalize_field_value(self.current)


FileStatus = Literal["matched", "unmatched", "manual", "rejected"]


class FileChange(BaseModel):
    """Proposed metadata changes for one archive."""

    file_id: str
    filename: str
    file_path: str
    group_index: int
    status: FileStatus = "unmatched"
    status_before_reject: FileStatus | None = None
    confidence: float = 0.0
    parse_failed: bool = False
    matched_issue: IssueRecord | None = None
    current_metadata: ComicInfo = Field(default_factory=ComicInfo)
    fields: dict[str, FieldChange] = Field(default_factory=dict)

    def actionable_fields(self) -> dict[str, FieldChange]:
        return {name: change for name, change in self.fields.items() if change.is_actionable()}

    def has_pending_changes(self) -> bool:
        return self.status != "rejected" and any(change.is_actionable() for change in self.fields.values())


# =============================================================================
# Input files and options
# =============================================================================


class JobFile(BaseModel):
    """An archive submitted to a job."""

    file_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    path: str

    @property
    def filename(self) -> str:
        return PurePath(self.path).name

    @property
    def folder(self) -> str:
        return str(PurePath(self.path).parent)


class JobOptions(BaseModel):
    exclude_file_ids: list[str] = Field(default_factory=list)
    mixed_series: bool = False
    search_mode: Literal["quick", "full"] = "quick"
    primary_source: MetadataSource | None = None
    cleanup_mode: Literal["merge", "replace"] = "merge"
    cross_source_matching: bool = True
    auto_apply_high_confidence: bool = True
    convert_cbr_to_cbz: bool = True
    create_series_marker: bool = True


# =============================================================================
# Series groups
# =============================================================================

GroupStatus = Literal["pending", "searching", "matched", "skipped"]


class SeriesGroup(BaseModel):
    """Files believed to belong to one series, and the user's choice for them."""

    display_name: str
    query: SeriesQuery
    folder_path: str
    file_ids: list[str] = Field(default_factory=list)
    filenames: list[str] = Field(default_factory=list)
    status: GroupStatus = "pending"

    search_query: str | None = None
    search_source: MetadataSource | None = None
    search_results: list[SeriesMatch] = Field(default_factory=list)
    pagination: SearchPagination | None = None

    selected_series: SeriesMatch | None = None
    issue_matching_series: SeriesMatch | None = None
    pre_approved_from_marker: bool = False
    pre_approved_from_cache: bool = False
    parse_failed_file_ids: list[str] = Field(default_factory=list)

    cross_source: CrossSourceResult | None = None
    merged_series: MergedSeriesMetadata | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def file_count(self) -> int:
        return len(self.file_ids)

    @property
    def is_pre_approved(self) -> bool:
        return self.selected_series is not None and (self.pre_approved_from_marker or self.pre_approved_from_cache)

    def metadata_series(self) -> SeriesMatch | None:
        """Series whose fields are written into the files."""
        return self.merged_series or self.selected_series

    def issue_series(self) -> SeriesMatch | None:
        """Series whose issue list files are matched against."""
        return self.issue_matching_series or self.selected_series


# =============================================================================
# Apply
# =============================================================================

ApplyPhase = Literal["converting", "writing", "series_marker"]


class ApplyProgress(BaseModel):
    phase: ApplyPhase
    current: int = 0
    total: int = 0
    current_file: str | None = None


class ApplyFileResult(BaseModel):
    file_id: str
    filename: str
    success: bool
    error: str | None = None
    converted: bool = False
    skipped: bool = False


class ApplyResult(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    converted: int = 0
    conversion_failed: int = 0
    results: list[ApplyFileResult] = Field(default_factory=list)

    def record(self, result: ApplyFileResult) -> None:
        self.results = [r for r in self.results if r.file_id != result.file_id]
        self.results.append(result)
        self.total = len(self.results)
        self.successful = sum(1 for r in self.results if r.success and not r.skipped)
        self.failed = sum(1 for r in self.results if not r.success)
        self.skipped = sum(1 for r in self.results if r.skipped)
        self.converted = sum(1 for r in self.results if r.converted)

    def result_for(self, file_id: str) -> ApplyFileResult | None:
        for result in self.results:
            if result.file_id == file_id:
                return result
        return None


class FieldUpdate(BaseModel):
    """A user's change to one field: approval flag and/or edit."""

    approved: bool | None = None
    edit: FieldEdit | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FieldUpdate:
        """Accept ``edited_value`` shorthand: a string sets, an explicit null clears."""
        data = dict(payload)
        if "edited_value" in data and "edit" not in data:
            value = data.pop("edited_value")
            data["edit"] = {"kind": "cleared"} if value is None else {"kind": "set", "value": str(value)}
        return cls.model_validate(data)
