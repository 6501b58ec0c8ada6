"""Confidence scoring for metadata matching.

Weights and thresholds live in MatchingConfig; criteria compare one aspect
of two records; scorer combines them into confidences in [0, 1].
"""

from .config import DEFAULT_CONFIG, MatchingConfig, get_matching_config, reload_matching_config
from .criteria import (
    aliases_match,
    cover_date_match,
    creator_overlap,
    issue_counts_match,
    normalize_publisher,
    publishers_match,
    title_similarity,
    year_match,
)
from .results import cross_source_summary, match_count_summary
from .scorer import (
    CrossMatchFactors,
    IssueMatchFactors,
    compare_series,
    match_file_to_issue,
    rank_series,
    score_file_issue,
    score_issue_match,
    score_series,
)

__all__ = [
    "MatchingConfig",
    "DEFAULT_CONFIG",
    "get_matching_config",
    "reload_matching_config",
    "title_similarity",
    "normalize_publisher",
    "publishers_match",
    "year_match",
    "issue_counts_match",
    "creator_overlap",
    "aliases_match",
    "cover_date_match",
    "CrossMatchFactors",
    "IssueMatchFactors",
    "score_series",
    "rank_series",
    "compare_series",
    "score_issue_match",
    "score_file_issue",
    "match_file_to_issue",
    "cross_source_summary",
    "match_count_summary",
]
