"""Turn source records into ComicInfo proposals and field diffs."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

from shelfarr.core.comicinfo import COMICINFO_FIELDS, ComicInfo
from shelfarr.core.matching.criteria import parse_cover_date
from shelfarr.core.sources.models import IssueRecord, SeriesMatch
from shelfarr.core.utils import is_empty, normalize_field_value, strip_html, truncate

from .models import FieldChange

SUMMARY_LIMIT = 2000

# Credit role -> ComicInfo field
CREDIT_FIELDS = {
    "writer": "writer",
    "penciller": "penciller",
    "inker": "inker",
    "colorist": "colorist",
    "letterer": "letterer",
    "cover": "cover_artist",
    "editor": "editor",
}


def _join(values: Iterable[str]) -> str | None:
    seen: dict[str, str] = {}
    for value in values:
        text = value.strip()
        if text and text.casefold() not in seen:
            seen[text.casefold()] = text
    return ", ".join(seen.values()) or None


def _text(value: object) -> str | None:
    return None if is_empty(value) else str(value)


def series_to_fields(series: SeriesMatch) -> ComicInfo:
    """Series-level values, used for files no issue could be matched to."""
    return ComicInfo(
        series=series.name,
        volume=_text(series.start_year),
        count=_text(series.issue_count),
        publisher=series.publisher,
    )


def issue_to_fields(issue: IssueRecord, series: SeriesMatch) -> ComicInfo:
    """Full ComicInfo proposal for a matched issue."""
    year = month = day = None
    cover = parse_cover_date(issue.cover_date)
    if cover is not None:
        year, month, day = cover

    credits: dict[str, list[str]] = {field: [] for field in CREDIT_FIELDS.values()}
    for credit in issue.credits:
        field = CREDIT_FIELDS.get((credit.role or "").lower())
        if field:
            credits[field].append(credit.name)

    return ComicInfo(
        series=series.name,
        number=issue.number,
        title=issue.title,
        volume=_text(series.start_year),
        count=_text(series.issue_count),
        summary=truncate(strip_html(issue.description), SUMMARY_LIMIT) or None,
        year=_text(year),
        month=_text(month or None),
        day=_text(day or None),
        publisher=series.publisher or issue.publisher,
        web=issue.url,
        page_count=_text(issue.page_count),
        characters=_join(issue.characters),
        teams=_join(issue.teams),
        locations=_join(issue.locations),
        story_arc=_join(issue.story_arcs),
        **{field: _join(names) for field, names in credits.items()},
    )


def build_field_changes(
    current: ComicInfo,
    proposed: ComicInfo,
    cleanup_mode: Literal["merge", "replace"] = "merge",
) -> dict[str, FieldChange]:
    """Diff current embedded metadata against a proposal.

    Only fields whose normalized values differ are returned, in schema order,
    all approved. With ``cleanup_mode="replace"`` fields the proposal leaves
    empty are proposed as cleared.
    """
    changes: dict[str, FieldChange] = {}
    for name in COMICINFO_FIELDS:
        current_value = getattr(current, name)
        proposed_value = getattr(proposed, name)
        if is_empty(proposed_value):
            if cleanup_mode == "replace" and not is_empty(current_value):
                changes[name] = FieldChange(current=current_value, proposed=None)
            continue
        if normalize_field_value(current_value) != normalize_field_value(proposed_value):
            changes[name] = FieldChange(current=current_value, proposed=proposed_value)
    return changes
