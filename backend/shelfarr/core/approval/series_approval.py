"""Series search and selection for groups awaiting approval."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog
from pydantic import BaseModel

from shelfarr.core.exceptions import SourceConfigurationError, SourceError
from shelfarr.core.matching import MatchingConfig, get_matching_config, rank_series
from shelfarr.core.sources.models import (
    MetadataSource,
    SearchPagination,
    SeriesMatch,
    SeriesQuery,
    SeriesSearchResult,
)
from shelfarr.core.sources.registry import SourceRegistry

from .models import JobOptions, SeriesGroup

logger = structlog.get_logger("shelfarr.approval.series")


class SeriesSelection(BaseModel):
    source: MetadataSource
    source_id: str


def search_sources(registry: SourceRegistry, options: JobOptions, source: str | None = None) -> list[str]:
    """Sources to query: an explicit one, the primary in quick mode, else all enabled."""
    if source:
        return [source]
    if options.search_mode == "quick":
        primary = options.primary_source or registry.primary_source
        return [primary] if primary else []
    return registry.enabled_sources()


async def search_series(
    registry: SourceRegistry,
    query: SeriesQuery,
    sources: Sequence[str],
    limit: int = 10,
    offset: int = 0,
    config: MatchingConfig | None = None,
) -> SeriesSearchResult:
    """Query ``sources`` and rank the combined candidates against ``query``.

    With a single source its errors propagate. With several, a failing
    source is logged and the others still answer, unless every source fails.
    """
    if config is None:
        config = get_matching_config()
    if not sources:
        raise SourceConfigurationError("metadata", "No metadata source is enabled", "Enable a source in settings.")

    async def one(name: str) -> SeriesSearchResult:
        adapter = registry.get(name)
        if adapter is None:
            raise SourceConfigurationError(name, f"Metadata source '{name}' is not enabled")
        adapter.require_configured()
        return await adapter.search(query.text(), limit=limit, offset=offset, year=query.year)

    if len(sources) == 1:
        results = [await one(sources[0])]
    else:
        outcomes = await asyncio.gather(*(one(name) for name in sources), return_exceptions=True)
        results = []
        errors: list[BaseException] = []
        for name, outcome in zip(sources, outcomes, strict=True):
            if isinstance(outcome, SourceError):
                logger.warning("Series search failed for source", source=name, error=outcome.message)
                errors.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        if not results and errors:
            raise errors[0]

    candidates = [match for result in results for match in result.results]
    ranked = rank_series(query, candidates, config)
    return SeriesSearchResult(
        results=ranked,
        pagination=SearchPagination(
            total=sum(result.pagination.total for result in results),
            offset=offset,
            limit=limit,
            has_more=any(result.pagination.has_more for result in results),
        ),
    )


def merge_search_results(existing: Sequence[SeriesMatch], more: Sequence[SeriesMatch]) -> list[SeriesMatch]:
    """Append ``more``, dropping candidates already present (same source and id)."""
    seen = {match.key for match in existing}
    merged = list(existing)
    for match in more:
        if match.key not in seen:
            seen.add(match.key)
            merged.append(match)
    return merged


def find_in_results(group: SeriesGroup, selection: SeriesSelection) -> SeriesMatch | None:
    for match in group.search_results:
        if match.source == selection.source and match.source_id == selection.source_id:
            return match
    return None


def suggest_series(group: SeriesGroup, config: MatchingConfig | None = None) -> SeriesMatch | None:
    """Preselect the top candidate when it clears the auto-select threshold."""
    if config is None:
        config = get_matching_config()
    if group.search_results and group.search_results[0].confidence >= config.auto_select_threshold:
        return group.search_results[0]
    return None


def next_pending_index(groups: Sequence[SeriesGroup], start: int = 0) -> int | None:
    for index in range(max(start, 0), len(groups)):
        if groups[index].status in ("pending", "searching"):
            return index
    return None


def apply_to_remaining(groups: Sequence[SeriesGroup], from_index: int, series: SeriesMatch) -> int:
    """Give every later pending group the same series; returns how many changed.

    Only the selected series carries over; each group keeps matching issues
    against that series unless it chose otherwise.
    """
    count = 0
    for group in groups[from_index + 1 :]:
        if group.status in ("pending", "searching"):
            group.selected_series = series
            group.status = "matched"
            count += 1
    return count


def reset_group(group: SeriesGroup, clear_selection: bool) -> None:
    """Return a group to approval. Clearing also forgets pre-approval."""
    group.status = "pending"
    group.cross_source = None
    group.merged_series = None
    if clear_selection:
        group.selected_series = None
        group.issue_matching_series = None
        group.pre_approved_from_marker = False
        group.pre_approved_from_cache = False
