"""Tests for confidence scoring."""

from __future__ import annotations

import json

import pytest

from shelfarr.core.config import Settings
from shelfarr.core.filename_parser import parse_filename
from shelfarr.core.matching import (
    DEFAULT_CONFIG,
    compare_series,
    cover_date_match,
    creator_overlap,
    cross_source_summary,
    get_matching_config,
    issue_counts_match,
    match_count_summary,
    match_file_to_issue,
    publishers_match,
    rank_series,
    reload_matching_config,
    score_file_issue,
    score_issue_match,
    score_series,
    title_similarity,
    year_match,
)
from shelfarr.core.sources.models import Credit, IssueRecord, SeriesMatch, SeriesQuery


def _series(source: str = "comicvine", source_id: str = "1", **kwargs) -> SeriesMatch:
    return SeriesMatch(source=source, source_id=source_id, name=kwargs.pop("name", "Batman"), **kwargs)


def _issue(number: str, **kwargs) -> IssueRecord:
    return IssueRecord(source=kwargs.pop("source", "comicvine"), source_id=kwargs.pop("source_id", number), number=number, **kwargs)


class TestCriteria:
    """Individual match criteria."""

    def test_title_similarity_exact(self):
        assert title_similarity("The Batman", "Batman") == 1.0
        assert title_similarity("", "") == 0.0
        assert title_similarity("Batman", None) == 0.0

    def test_title_similarity_containment(self):
        score = title_similarity("Batman", "Batman Beyond")
        assert 0.7 < score < 0.9

    def test_title_similarity_unrelated(self):
        assert title_similarity("Batman", "Saga") < 0.5

    def test_title_similarity_typo(self):
        assert title_similarity("Batmn", "Batman") > 0.85
        assert title_similarity("Swamp Thng", "Swamp Thing") > 0.9

    def test_publishers_match_aliases(self):
        assert publishers_match("DC", "DC Comics")
        assert publishers_match("Marvel Worldwide", "marvel")
        assert not publishers_match("DC", "Marvel")
        assert not publishers_match(None, "DC")

    def test_year_match(self):
        assert year_match(2011, 2011) == "exact"
        assert year_match(2011, 2012) == "close"
        assert year_match(2011, 2014) == "none"
        assert year_match(None, 2011) == "none"

    def test_issue_counts_match(self):
        assert issue_counts_match(52, 50)
        assert not issue_counts_match(52, 40)
        assert not issue_counts_match(None, 52)

    def test_creator_overlap(self):
        left = [Credit(name="Scott Snyder"), Credit(name="Greg Capullo")]
        right = [Credit(name="greg capullo"), Credit(name="Jim Lee")]
        assert creator_overlap(left, right) == ["greg capullo"]

    def test_cover_date_match(self):
        assert cover_date_match("2011-11-01", "2011-11-15") == "exact"
        assert cover_date_match("2011-11", "2011-12") == "close"
        assert cover_date_match("2011", "2011-05") == "close"
        assert cover_date_match("2011-01", "2011-06") == "none"
        assert cover_date_match("2011-01", "2012-01") == "none"
        assert cover_date_match(None, "2011-01") == "none"


class TestSeriesScoring:
    """Series candidates scored against a local query."""

    def test_title_only_query_exact_title(self):
        assert score_series(SeriesQuery(series="Batman"), _series()) == 1.0

    def test_year_mismatch_lowers_score(self):
        query = SeriesQuery(series="Batman", year=2011)
        assert score_series(query, _series(start_year=2011)) == 1.0
        assert score_series(query, _series(start_year=2012)) == pytest.approx(0.8182, abs=1e-4)
        assert score_series(query, _series(start_year=2016)) == pytest.approx(0.6364, abs=1e-4)

    def test_publisher_counts_when_known(self):
        query = SeriesQuery(series="Batman", publisher="DC")
        assert score_series(query, _series(publisher="DC Comics")) == 1.0
        assert score_series(query, _series(publisher="Marvel")) == pytest.approx(0.35 / 0.55, abs=1e-4)

    def test_alias_grants_title_factor(self):
        query = SeriesQuery(series="Dark Knight")
        candidate = _series(name="Batman: The Dark Knight Returns", aliases=["Dark Knight"])
        assert score_series(query, candidate) >= DEFAULT_CONFIG.alias_title_similarity

    def test_creator_overlap_counts_when_query_names_creators(self):
        query = SeriesQuery(series="Saga", creators=["Brian K. Vaughan"])
        by_vaughan = _series(
            name="Saga", creators=[Credit(name="Brian K. Vaughan", role="writer"), Credit(name="Fiona Staples")]
        )
        by_others = _series(name="Saga", creators=[Credit(name="Someone Else", role="writer")])

        assert score_series(query, by_vaughan) == 1.0
        assert score_series(query, by_others) == pytest.approx(0.35 / 0.45, abs=1e-4)
        assert [m.creators[0].name for m in rank_series(query, [by_others, by_vaughan])][0] == "Brian K. Vaughan"

    def test_creators_ignored_when_query_has_none(self):
        candidate = _series(name="Saga", creators=[Credit(name="Brian K. Vaughan")])
        assert score_series(SeriesQuery(series="Saga"), candidate) == 1.0

    def test_scores_are_deterministic(self):
        query = SeriesQuery(series="Batman", year=2011, publisher="DC")
        candidate = _series(start_year=2012, publisher="DC Comics", issue_count=52)
        assert score_series(query, candidate) == score_series(query, candidate)

    def test_rank_series_best_first(self):
        query = SeriesQuery(series="Batman", year=2011)
        older = _series(source_id="1", start_year=2016)
        newer = _series(source_id="2", start_year=2011)

        ranked = rank_series(query, [older, newer])

        assert [match.source_id for match in ranked] == ["2", "1"]
        assert ranked[0].confidence == 1.0
        # Inputs are not modified
        assert older.confidence == 0.0

    def test_rank_series_keeps_source_order_on_ties(self):
        query = SeriesQuery(series="Batman")
        ranked = rank_series(query, [_series(source_id="a"), _series(source_id="b")])
        assert [match.source_id for match in ranked] == ["a", "b"]


class TestCrossSourceComparison:
    """Records from different sources compared to each other."""

    def test_identical_records(self, batman_comicvine: SeriesMatch, batman_metron: SeriesMatch):
        confidence, factors = compare_series(batman_comicvine, batman_metron)

        assert factors.title_similarity == 1.0
        assert factors.publisher_match is True
        assert factors.year_match == "exact"
        assert factors.issue_count_match is True
        assert factors.creator_overlap == ["scott snyder", "greg capullo"]
        # Two of three creators for full creator weight
        assert confidence == pytest.approx(0.35 + 0.2 + 0.2 + 0.1 + 0.1 * 2 / 3, abs=1e-4)

    def test_alias_match_adds_weight(self, batman_comicvine: SeriesMatch):
        other = _series(source="metron", source_id="9", name="The Batman", aliases=["Batman"])
        _, factors = compare_series(batman_comicvine, other)
        assert factors.alias_match is True

    def test_score_clamped(self):
        primary = _series(
            publisher="DC",
            start_year=2011,
            issue_count=52,
            aliases=["Bat"],
            creators=[Credit(name=name) for name in ("a", "b", "c")],
        )
        other = _series(
            source="metron",
            name="Bat",
            publisher="DC",
            start_year=2011,
            issue_count=52,
            aliases=["Batman"],
            creators=[Credit(name=name) for name in ("a", "b", "c")],
        )
        confidence, _ = compare_series(primary, other)
        assert 0.0 <= confidence <= 1.0


class TestIssueScoring:
    """Issue and file matching."""

    def test_issue_match_across_sources(self):
        primary = _issue("1", cover_date="2011-11-01", title="Knight Terrors")
        candidate = _issue("001", source="metron", cover_date="2011-11-01", title="Knight Terrors")

        confidence, factors = score_issue_match(primary, candidate)

        assert factors.issue_number_match is True
        assert factors.cover_date_match == "exact"
        assert confidence == pytest.approx(0.9)

    def test_issue_number_mismatch(self):
        confidence, factors = score_issue_match(_issue("1"), _issue("2", source="metron"))
        assert factors.issue_number_match is False
        assert confidence < DEFAULT_CONFIG.issue_match_threshold

    def test_file_issue_full_match(self):
        parsed = parse_filename("Batman 001 (2011).cbz")
        issue = _issue("1", series_name="Batman", cover_date="2011-11-01")
        assert score_file_issue(parsed, issue) == 1.0

    def test_file_issue_number_mismatch_is_zero(self):
        parsed = parse_filename("Batman 002 (2011).cbz")
        assert score_file_issue(parsed, _issue("1", series_name="Batman")) == 0.0

    def test_file_without_year(self):
        parsed = parse_filename("Batman 001.cbz")
        issue = _issue("1", series_name="Batman", cover_date="2011-11-01")
        assert score_file_issue(parsed, issue) == pytest.approx(0.925)

    def test_parse_failure_penalty(self):
        parsed = parse_filename("001.cbz")
        issue = _issue("1", series_name="Batman")
        assert score_file_issue(parsed, issue) < DEFAULT_CONFIG.file_number_base

    def test_match_file_picks_best_issue(self):
        parsed = parse_filename("Batman 002 (2011).cbz")
        issues = [_issue(str(n), series_name="Batman", cover_date=f"2011-{n:02d}-01") for n in (1, 2, 3)]

        issue, confidence = match_file_to_issue(parsed, issues)

        assert issue is not None and issue.number == "2"
        assert confidence >= DEFAULT_CONFIG.file_match_threshold

    def test_single_issue_series_without_number(self):
        parsed = parse_filename("Watchmen (1987).cbz")
        issue, confidence = match_file_to_issue(parsed, [_issue("1", series_name="Watchmen")])

        assert issue is not None
        assert confidence == DEFAULT_CONFIG.single_issue_confidence

        issue, confidence = match_file_to_issue(parsed, [_issue("1"), _issue("2")])
        assert issue is None
        assert confidence == 0.0

    def test_no_issues(self):
        assert match_file_to_issue(parse_filename("Batman 001.cbz"), []) == (None, 0.0)


class TestSummaries:
    def test_cross_source_summary_counts_searched_sources(self):
        status = {"comicvine": "skipped", "metron": "matched", "gcd": "no_match"}
        assert cross_source_summary(status, "comicvine") == "1/2 matched"

    def test_cross_source_summary_no_matches(self):
        assert cross_source_summary({"metron": "no_match", "gcd": "error"}, "comicvine") == "No matches"

    def test_cross_source_summary_nothing_searched(self):
        status = {"comicvine": "skipped", "metron": "skipped"}
        assert cross_source_summary(status, "comicvine") == "No other sources searched"

    def test_match_count_summary(self):
        assert match_count_summary(3, 4) == "3 of 4 files matched"
        assert match_count_summary(1, 1) == "1 of 1 file matched"


def test_matching_config_from_settings_file(isolated_settings: Settings) -> None:
    """Test that the "matching" block of settings.json overrides defaults."""
    (isolated_settings.config_dir / "settings.json").write_text(
        json.dumps({"matching": {"auto_select_threshold": 0.7, "unknown_weight": 1.0}})
    )

    reload_matching_config()

    config = get_matching_config()
    assert config.auto_select_threshold == 0.7
    assert config.title_weight == DEFAULT_CONFIG.title_weight
