"""Merge series and issue records from several sources into one.

Every populated field of a merged record names the source that supplied it in
``field_sources``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

import structlog
from pydantic import BaseModel, Field

from shelfarr.core.cross_source import CrossSourceMatch
from shelfarr.core.sources.models import Credit, IssueRecord, SeriesMatch
from shelfarr.core.utils import is_empty

logger = structlog.get_logger("shelfarr.merge")

SERIES_SCALAR_FIELDS = (
    "name",
    "publisher",
    "start_year",
    "end_year",
    "issue_count",
    "series_type",
    "volume",
    "description",
    "short_description",
    "cover_url",
    "url",
    "first_issue_number",
    "last_issue_number",
)
SERIES_ARRAY_FIELDS = ("aliases", "characters", "creators", "locations", "objects")

ISSUE_SCALAR_FIELDS = (
    "number",
    "title",
    "cover_date",
    "store_date",
    "description",
    "cover_url",
    "url",
    "publisher",
    "page_count",
)
ISSUE_ARRAY_FIELDS = ("credits", "characters", "teams", "locations", "story_arcs")


class MergedSeriesMetadata(SeriesMatch):
    """A series record assembled from one or more sources."""

    field_sources: dict[str, str] = Field(default_factory=dict)
    contributing_sources: list[str] = Field(default_factory=list)
    accepted_sources: list[str] = Field(default_factory=list)
    all_field_values: dict[str, dict[str, Any]] = Field(default_factory=dict)
    field_source_overrides: dict[str, str] = Field(default_factory=dict)


class MergedIssueMetadata(IssueRecord):
    field_sources: dict[str, str] = Field(default_factory=dict)
    contributing_sources: list[str] = Field(default_factory=list)


def _priority_index(priority: Sequence[str], source: str) -> int:
    return priority.index(source) if source in priority else len(priority)


def _dedupe_key(item: Any, with_role: bool) -> Any:
    if isinstance(item, Credit):
        name = item.name.strip().casefold()
        return (name, item.role) if with_role else name
    if isinstance(item, str):
        return item.strip().casefold()
    return item


def _merge_fields(
    records: Sequence[BaseModel],
    scalar_fields: Iterable[str],
    array_fields: Iterable[str],
    *,
    with_role: bool = False,
) -> tuple[dict[str, Any], dict[str, str]]:
    """Pick scalar values and union array values across ``records`` in order.

    ``records`` must already be in priority order and each carry ``source``.
    """
    values: dict[str, Any] = {}
    sources: dict[str, str] = {}

    for field_name in scalar_fields:
        for record in records:
            value = getattr(record, field_name)
            if not is_empty(value):
                values[field_name] = value
                sources[field_name] = record.source  # type: ignore[attr-defined]
                break

    for field_name in array_fields:
        merged: list[Any] = []
        seen: set[Any] = set()
        for record in records:
            for item in getattr(record, field_name) or []:
                if isinstance(item, str) and not item.strip():
                    continue
                key = _dedupe_key(item, with_role)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(item)
                sources.setdefault(field_name, record.source)  # type: ignore[attr-defined]
        values[field_name] = merged

    return values, sources


def _contributing_records(
    primary: SeriesMatch,
    matches: Sequence[CrossSourceMatch],
    priority: Sequence[str],
    auto_apply_high_confidence: bool,
    accepted_sources: Iterable[str] | None,
) -> list[SeriesMatch]:
    accepted = set(accepted_sources or ())
    records: list[SeriesMatch] = [primary]
    for match in matches:
        if match.source == primary.source:
            continue
        if (auto_apply_high_confidence and match.is_auto_match_candidate) or match.source in accepted:
            records.append(match.series)
    return sorted(records, key=lambda record: _priority_index(priority, record.source))


def merge_series(
    primary: SeriesMatch,
    matches: Sequence[CrossSourceMatch] = (),
    priority: Sequence[str] = ("comicvine", "metron", "gcd"),
    auto_apply_high_confidence: bool = True,
    accepted_sources: Iterable[str] | None = None,
) -> MergedSeriesMetadata:
    """Merge the primary record with its cross-source matches.

    A secondary record contributes when it is an auto-match candidate and
    ``auto_apply_high_confidence`` is on, or when the user accepted its
    source. Contributing records are walked in ``priority`` order: the first
    non-empty scalar wins and array fields are unioned case-insensitively.

    ``source`` and ``source_id`` always stay those of the primary.
    """
    records = _contributing_records(primary, matches, priority, auto_apply_high_confidence, accepted_sources)
    values, field_sources = _merge_fields(records, SERIES_SCALAR_FIELDS, SERIES_ARRAY_FIELDS)

    contributing = [record.source for record in records if record.source in field_sources.values()]
    merged = MergedSeriesMetadata(
        source=primary.source,
        source_id=primary.source_id,
        confidence=primary.confidence,
        **{"name": primary.name, **values},
        field_sources=field_sources,
        contributing_sources=contributing,
        accepted_sources=sorted(set(accepted_sources or ())),
    )
    logger.debug(
        "Merged series metadata",
        primary_source=primary.source,
        primary_id=primary.source_id,
        contributing=contributing,
    )
    return merged


def merge_series_all_values(
    primary: SeriesMatch,
    matches: Sequence[CrossSourceMatch] = (),
    priority: Sequence[str] = ("comicvine", "metron", "gcd"),
    auto_apply_high_confidence: bool = True,
    accepted_sources: Iterable[str] | None = None,
    overrides: dict[str, str] | None = None,
) -> MergedSeriesMetadata:
    """Like merge_series, but keeps every source's value for each field.

    The per-source values make it possible to pick a different source for a
    field afterwards with apply_field_overrides.
    """
    merged = merge_series(primary, matches, priority, auto_apply_high_confidence, accepted_sources)
    records = _contributing_records(primary, matches, priority, auto_apply_high_confidence, accepted_sources)

    all_values: dict[str, dict[str, Any]] = {}
    for field_name in (*SERIES_SCALAR_FIELDS, *SERIES_ARRAY_FIELDS):
        per_source = {
            record.source: getattr(record, field_name)
            for record in records
            if not is_empty(getattr(record, field_name))
        }
        if per_source:
            all_values[field_name] = per_source

    merged = merged.model_copy(update={"all_field_values": all_values})
    if overrides:
        merged = apply_field_overrides(merged, overrides)
    return merged


def apply_field_overrides(merged: MergedSeriesMetadata, overrides: dict[str, str]) -> MergedSeriesMetadata:
    """Re-select fields from specific sources.

    Overrides for unknown fields, or naming a source that has no value for
    the field, are ignored.
    """
    update: dict[str, Any] = {}
    field_sources = dict(merged.field_sources)
    applied = dict(merged.field_source_overrides)

    for field_name, source in overrides.items():
        value = merged.all_field_values.get(field_name, {}).get(source)
        if is_empty(value):
            logger.debug("Ignoring field override without value", field=field_name, source=source)
            continue
        update[field_name] = value
        field_sources[field_name] = source
        applied[field_name] = source

    if not update:
        return merged
    contributing = [source for source in merged.contributing_sources if source in field_sources.values()]
    contributing.extend(source for source in applied.values() if source not in contributing)
    return merged.model_copy(
        update={
            **update,
            "field_sources": field_sources,
            "field_source_overrides": applied,
            "contributing_sources": contributing,
        }
    )


def merge_issues(
    primary: IssueRecord,
    others: Sequence[IssueRecord] = (),
    priority: Sequence[str] = ("comicvine", "metron", "gcd"),
) -> MergedIssueMetadata:
    """Merge one issue with the same issue from other sources.

    Credits are de-duplicated by name and role, other lists by name.
    """
    records = sorted(
        [primary, *(issue for issue in others if issue.source != primary.source)],
        key=lambda record: _priority_index(priority, record.source),
    )
    values, field_sources = _merge_fields(records, ISSUE_SCALAR_FIELDS, ISSUE_ARRAY_FIELDS, with_role=True)
    contributing = [record.source for record in records if record.source in field_sources.values()]
    return MergedIssueMetadata(
        source=primary.source,
        source_id=primary.source_id,
        series_id=primary.series_id,
        series_name=primary.series_name,
        **values,
        field_sources=field_sources,
        contributing_sources=contributing,
    )
