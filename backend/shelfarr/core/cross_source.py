"""Cross-source matching.

Given a series chosen from one source, look for the same series in every
other enabled source. Sources are queried concurrently with a bound on
parallelism, each query has its own timeout, and one source failing never
affects the others.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from typing import Literal

import structlog
from pydantic import BaseModel, Field

from shelfarr.core.exceptions import SourceConfigurationError, SourceError
from shelfarr.core.matching import (
    CrossMatchFactors,
    MatchingConfig,
    compare_series,
    cross_source_summary,
    get_matching_config,
    score_issue_match,
)
from shelfarr.core.metrics import cross_source_results_total
from shelfarr.core.sources.models import IssueRecord, MetadataSource, SeriesMatch
from shelfarr.core.sources.registry import SourceRegistry

logger = structlog.get_logger("shelfarr.cross_source")

CrossSourceStatus = Literal["matched", "no_match", "searching", "error", "skipped"]


class CrossSourceMatch(BaseModel):
    source: MetadataSource
    source_id: str
    series: SeriesMatch
    confidence: float
    match_factors: CrossMatchFactors
    is_auto_match_candidate: bool = False


class CrossSourceResult(BaseModel):
    primary_source: MetadataSource
    primary_source_id: str
    matches: list[CrossSourceMatch] = Field(default_factory=list)
    status: dict[str, CrossSourceStatus] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    summary: str = ""

    def match_for(self, source: str) -> CrossSourceMatch | None:
        for match in self.matches:
            if match.source == source:
                return match
        return None


class CrossSourceMatcher:
    """Find the primary series in the other sources."""

    def __init__(
        self,
        registry: SourceRegistry,
        *,
        concurrency: int = 3,
        timeout: float = 30.0,
        config: MatchingConfig | None = None,
    ) -> None:
        self.registry = registry
        self.concurrency = max(1, concurrency)
        self.timeout = timeout
        self.config = config or get_matching_config()

    async def find_matches(
        self,
        primary: SeriesMatch,
        target_sources: Iterable[str] | None = None,
        threshold: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> CrossSourceResult:
        """Query the other sources for ``primary``.

        Args:
            primary: The selected series record.
            target_sources: Sources to search; defaults to every enabled source
                except the primary's.
            threshold: Auto-match threshold, defaults to the configured one.
            cancel_event: When set, sources not yet queried are skipped;
                queries already in flight are allowed to finish.

        Returns:
            CrossSourceResult with one status per known source.
        """
        if threshold is None:
            threshold = self.config.auto_match_threshold

        enabled = self.registry.enabled_sources()
        targets = (
            [s for s in target_sources if s != primary.source]
            if target_sources is not None
            else [s for s in enabled if s != primary.source]
        )

        result = CrossSourceResult(primary_source=primary.source, primary_source_id=primary.source_id)
        for source in dict.fromkeys([*enabled, *targets]):
            result.status[source] = "searching" if source in targets else "skipped"
        result.status[primary.source] = "skipped"

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(self._search_source(source, primary, threshold, semaphore, cancel_event) for source in targets)
        )

        for source, (status, match, error) in zip(targets, outcomes, strict=True):
            result.status[source] = status
            if match is not None:
                result.matches.append(match)
            if error:
                result.errors[source] = error
            cross_source_results_total.labels(source=source, status=status).inc()

        result.matches.sort(key=lambda m: m.confidence, reverse=True)
        result.summary = cross_source_summary(result.status, primary.source)

        logger.info(
            "Cross-source matching finished",
            primary_source=primary.source,
            primary_id=primary.source_id,
            series=primary.name,
            summary=result.summary,
            status=result.status,
        )
        return result

    async def _search_source(
        self,
        source: str,
        primary: SeriesMatch,
        threshold: float,
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event | None,
    ) -> tuple[CrossSourceStatus, CrossSourceMatch | None, str | None]:
        if cancel_event is not None and cancel_event.is_set():
            return "skipped", None, None

        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return "skipped", None, None

            adapter = self.registry.get(source)
            if adapter is None:
                return "error", None, f"Source {source} is not available"
            if not adapter.is_configured():
                return "error", None, adapter.configuration_hint()

            try:
                search = await asyncio.wait_for(
                    adapter.search(
                        primary.name,
                        limit=self.config.cross_source_search_limit,
                        year=primary.start_year,
                    ),
                    timeout=self.timeout,
                )
            except TimeoutError:
                logger.warning("Cross-source search timed out", source=source, timeout=self.timeout)
                return "error", None, f"Timed out after {self.timeout:g}s"
            except SourceConfigurationError as exc:
                logger.warning("Cross-source search not configured", source=source, error=exc.message)
                return "error", None, f"{exc.message}. {exc.hint}"
            except SourceError as exc:
                logger.warning("Cross-source search failed", source=source, error=exc.message)
                return "error", None, exc.message
            except Exception as exc:
                logger.exception("Unexpected cross-source search failure", source=source)
                return "error", None, str(exc) or type(exc).__name__

        best: CrossSourceMatch | None = None
        for candidate in search.results:
            if (
                primary.start_year
                and candidate.start_year
                and abs(primary.start_year - candidate.start_year)
                > self.config.max_cross_source_year_difference
            ):
                continue
            confidence, factors = compare_series(primary, candidate, self.config)
            if best is None or confidence > best.confidence:
                best = CrossSourceMatch(
                    source=candidate.source,
                    source_id=candidate.source_id,
                    series=candidate.model_copy(update={"confidence": confidence}),
                    confidence=confidence,
                    match_factors=factors,
                    is_auto_match_candidate=confidence >= threshold,
                )

        if best is None:
            return "no_match", None, None
        return "matched", best, None


def match_issue_lists(
    primary_issues: Sequence[IssueRecord],
    candidate_issues: Sequence[IssueRecord],
    config: MatchingConfig | None = None,
) -> dict[str, IssueRecord]:
    """Pair each primary issue with its best counterpart from another source.

    Returns:
        Mapping of primary issue source_id to the matching candidate issue,
        for pairs scoring at least the issue match threshold.
    """
    if config is None:
        config = get_matching_config()

    pairs: dict[str, IssueRecord] = {}
    for issue in primary_issues:
        best: IssueRecord | None = None
        best_score = 0.0
        for candidate in candidate_issues:
            score, _ = score_issue_match(issue, candidate, config)
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score >= config.issue_match_threshold:
            pairs[issue.source_id] = best
    return pairs
