"""Matching configuration - scoring weights and thresholds."""

import json
from dataclasses import dataclass, fields

import structlog

logger = structlog.get_logger("shelfarr.matching.config")


@dataclass
class MatchingConfig:
    """Scoring weights and thresholds for series, issue and file matching.

    Series weights are shared by query scoring and cross-source comparison
    and sum to 1.0.
    """

    # Series weights
    title_weight: float = 0.35
    publisher_weight: float = 0.20
    year_weight: float = 0.20
    issue_count_weight: float = 0.10
    creator_overlap_weight: float = 0.10
    alias_weight: float = 0.05

    close_year_factor: float = 0.5  # within one year
    issue_count_tolerance: float = 0.10  # fraction of the larger count
    creator_overlap_target: int = 3  # overlap count that earns the full weight
    alias_title_similarity: float = 0.9  # title factor granted by an alias hit

    # Issue weights (issue vs issue, used across sources)
    issue_number_weight: float = 0.5
    cover_date_weight: float = 0.25
    issue_title_weight: float = 0.15
    page_count_weight: float = 0.10
    issue_match_threshold: float = 0.7

    # File vs issue
    file_number_base: float = 0.75
    file_year_weight: float = 0.15
    file_title_weight: float = 0.10
    single_issue_confidence: float = 0.6
    parse_failure_penalty: float = 0.2
    file_match_threshold: float = 0.5

    # Thresholds
    auto_match_threshold: float = 0.95
    auto_select_threshold: float = 0.8
    high_confidence_threshold: float = 0.8
    max_cross_source_year_difference: int = 2

    # Search limits
    series_search_limit: int = 10
    custom_search_limit: int = 15
    cross_source_search_limit: int = 10


DEFAULT_CONFIG = MatchingConfig()

_cached_config: MatchingConfig | None = None


def get_matching_config() -> MatchingConfig:
    """Get the current matching configuration.

    Reads the "matching" block of settings.json when present, otherwise the
    defaults. The result is cached until reload_matching_config().
    """
    global _cached_config

    if _cached_config is not None:
        return _cached_config

    from shelfarr.core.config import get_settings

    settings_file = get_settings().config_dir / "settings.json"
    config = DEFAULT_CONFIG
    if settings_file.exists():
        try:
            with settings_file.open("r") as f:
                matching_settings = json.load(f).get("matching")
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read matching settings", error=str(exc))
            matching_settings = None
        if isinstance(matching_settings, dict):
            known = {f.name for f in fields(MatchingConfig)}
            config = MatchingConfig(**{k: v for k, v in matching_settings.items() if k in known})

    _cached_config = config
    return _cached_config


def reload_matching_config() -> None:
    """Drop the cached configuration so the next call re-reads settings.json."""
    global _cached_config
    _cached_config = None
    get_matching_config()
