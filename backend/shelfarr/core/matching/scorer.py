"""Confidence scoring for series, issues and files.

All functions here are pure: the same inputs always produce the same score,
and every score is clamped to [0, 1].
"""

from collections.abc import Sequence

from pydantic import BaseModel, Field

from shelfarr.core.filename_parser import ParsedFilename
from shelfarr.core.sources.models import Credit, IssueRecord, SeriesMatch, SeriesQuery
from shelfarr.core.utils import issue_numbers_match

from .config import MatchingConfig, get_matching_config
from .criteria import (
    YearMatch,
    aliases_match,
    cover_date_match,
    creator_overlap,
    issue_counts_match,
    parse_cover_date,
    publishers_match,
    title_similarity,
    year_match,
)


class CrossMatchFactors(BaseModel):
    """Why two series records from different sources were judged the same."""

    title_similarity: float = 0.0
    publisher_match: bool = False
    year_match: YearMatch = "none"
    issue_count_match: bool = False
    creator_overlap: list[str] = Field(default_factory=list)
    alias_match: bool = False


class IssueMatchFactors(BaseModel):
    issue_number_match: bool = False
    cover_date_match: YearMatch = "none"
    title_similarity: float = 0.0
    page_count_match: bool = False


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _year_points(match: YearMatch, weight: float, config: MatchingConfig) -> float:
    if match == "exact":
        return weight
    if match == "close":
        return weight * config.close_year_factor
    return 0.0


def score_series(
    query: SeriesQuery,
    candidate: SeriesMatch,
    config: MatchingConfig | None = None,
) -> float:
    """Score a candidate series against what we parsed locally.

    Only factors the query actually carries are weighed; the result is the
    share of that available weight the candidate earned. A title-only query
    with an exact title therefore scores 1.0.
    """
    if config is None:
        config = get_matching_config()

    title_factor = title_similarity(query.series, candidate.name)
    if title_factor < config.alias_title_similarity and aliases_match(
        candidate.aliases, query.series
    ):
        title_factor = config.alias_title_similarity

    available = config.title_weight
    earned = title_factor * config.title_weight

    if query.publisher:
        available += config.publisher_weight
        if publishers_match(query.publisher, candidate.publisher):
            earned += config.publisher_weight

    if query.year:
        available += config.year_weight
        earned += _year_points(year_match(query.year, candidate.start_year), config.year_weight, config)

    if query.issue_count:
        available += config.issue_count_weight
        if issue_counts_match(query.issue_count, candidate.issue_count, config.issue_count_tolerance):
            earned += config.issue_count_weight

    if query.creators:
        available += config.creator_overlap_weight
        overlap = creator_overlap([Credit(name=name) for name in query.creators], candidate.creators)
        target = min(config.creator_overlap_target, len(query.creators))
        earned += min(len(overlap) / target, 1.0) * config.creator_overlap_weight

    return round(_clamp(earned / available), 4)


def rank_series(
    query: SeriesQuery,
    candidates: Sequence[SeriesMatch],
    config: MatchingConfig | None = None,
) -> list[SeriesMatch]:
    """Return copies of ``candidates`` carrying their confidence, best first.

    Ties keep the order the source returned them in.
    """
    if config is None:
        config = get_matching_config()
    scored = [
        candidate.model_copy(update={"confidence": score_series(query, candidate, config)})
        for candidate in candidates
    ]
    return sorted(scored, key=lambda match: match.confidence, reverse=True)


def compare_series(
    primary: SeriesMatch,
    candidate: SeriesMatch,
    config: MatchingConfig | None = None,
) -> tuple[float, CrossMatchFactors]:
    """Score a record from another source against the primary record.

    Every weight is always in play here; a factor one side cannot supply
    simply earns nothing.
    """
    if config is None:
        config = get_matching_config()

    factors = CrossMatchFactors(
        title_similarity=title_similarity(primary.name, candidate.name),
        publisher_match=publishers_match(primary.publisher, candidate.publisher),
        year_match=year_match(primary.start_year, candidate.start_year),
        issue_count_match=issue_counts_match(
            primary.issue_count, candidate.issue_count, config.issue_count_tolerance
        ),
        creator_overlap=creator_overlap(primary.creators, candidate.creators),
        alias_match=aliases_match(candidate.aliases, primary.name)
        or aliases_match(primary.aliases, candidate.name),
    )

    confidence = factors.title_similarity * config.title_weight
    if factors.publisher_match:
        confidence += config.publisher_weight
    confidence += _year_points(factors.year_match, config.year_weight, config)
    if factors.issue_count_match:
        confidence += config.issue_count_weight
    if factors.creator_overlap:
        confidence += (
            min(len(factors.creator_overlap) / config.creator_overlap_target, 1.0)
            * config.creator_overlap_weight
        )
    if factors.alias_match:
        confidence += config.alias_weight

    return round(_clamp(confidence), 4), factors


def score_issue_match(
    primary: IssueRecord,
    candidate: IssueRecord,
    config: MatchingConfig | None = None,
) -> tuple[float, IssueMatchFactors]:
    """Score an issue from another source against the primary issue."""
    if config is None:
        config = get_matching_config()

    factors = IssueMatchFactors()
    confidence = 0.0

    if primary.number and candidate.number and issue_numbers_match(primary.number, candidate.number):
        factors.issue_number_match = True
        confidence += config.issue_number_weight

    factors.cover_date_match = cover_date_match(primary.cover_date, candidate.cover_date)
    confidence += _year_points(factors.cover_date_match, config.cover_date_weight, config)

    if primary.title and candidate.title:
        factors.title_similarity = title_similarity(primary.title, candidate.title)
        confidence += factors.title_similarity * config.issue_title_weight
    elif not primary.title and not candidate.title:
        factors.title_similarity = 0.5
        confidence += config.issue_title_weight * 0.5

    if primary.page_count and candidate.page_count and primary.page_count == candidate.page_count:
        factors.page_count_match = True
        confidence += config.page_count_weight

    return round(_clamp(confidence), 4), factors


def _file_year_factor(parsed: ParsedFilename, issue: IssueRecord, series: SeriesMatch | None) -> float:
    if parsed.year is None:
        return 0.5
    # Files are commonly named after the volume's start year, not the cover year
    if series is not None and series.start_year == parsed.year:
        return 1.0
    cover = parse_cover_date(issue.cover_date)
    if cover is None:
        return 0.5
    if cover[0] == parsed.year:
        return 1.0
    if abs(cover[0] - parsed.year) <= 1:
        return 0.75
    return 0.0


def score_file_issue(
    parsed: ParsedFilename,
    issue: IssueRecord,
    series: SeriesMatch | None = None,
    config: MatchingConfig | None = None,
) -> float:
    """Confidence that a parsed file is ``issue``.

    A differing issue number is never a match. Beyond the number, the year in
    the filename and the series name each add a share.
    """
    if config is None:
        config = get_matching_config()

    if not parsed.issue_number or not issue_numbers_match(parsed.issue_number, issue.number):
        return 0.0

    series_name = issue.series_name or (series.name if series else None)
    title_factor = title_similarity(parsed.series, series_name) if series_name else 0.5

    confidence = (
        config.file_number_base
        + config.file_year_weight * _file_year_factor(parsed, issue, series)
        + config.file_title_weight * title_factor
    )
    if parsed.parse_failed:
        confidence -= config.parse_failure_penalty
    return round(_clamp(confidence), 4)


def match_file_to_issue(
    parsed: ParsedFilename,
    issues: Sequence[IssueRecord],
    series: SeriesMatch | None = None,
    config: MatchingConfig | None = None,
) -> tuple[IssueRecord | None, float]:
    """Pick the issue a file most likely is.

    A file without an issue number matches a one-issue series (one-shots and
    graphic novels) with reduced confidence.

    Returns:
        Tuple of (best issue or None, confidence)
    """
    if config is None:
        config = get_matching_config()
    if not issues:
        return None, 0.0

    if not parsed.issue_number:
        if len(issues) == 1:
            confidence = config.single_issue_confidence
            if parsed.parse_failed:
                confidence -= config.parse_failure_penalty
            return issues[0], round(_clamp(confidence), 4)
        return None, 0.0

    best_issue: IssueRecord | None = None
    best_score = 0.0
    for issue in issues:
        score = score_file_issue(parsed, issue, series, config)
        if score > best_score:
            best_issue, best_score = issue, score
    return best_issue, best_score
