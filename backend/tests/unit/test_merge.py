"""Tests for multi-source metadata merging."""

from __future__ import annotations

import pytest

from shelfarr.core.cross_source import CrossSourceMatch
from shelfarr.core.matching import CrossMatchFactors
from shelfarr.core.merge import (
    apply_field_overrides,
    merge_issues,
    merge_series,
    merge_series_all_values,
)
from shelfarr.core.sources.models import Credit, IssueRecord, SeriesMatch


def _match(series: SeriesMatch, confidence: float = 0.97, auto: bool = True) -> CrossSourceMatch:
    return CrossSourceMatch(
        source=series.source,
        source_id=series.source_id,
        series=series,
        confidence=confidence,
        match_factors=CrossMatchFactors(title_similarity=1.0),
        is_auto_match_candidate=auto,
    )


@pytest.fixture
def metron_dc(batman_metron: SeriesMatch) -> SeriesMatch:
    return batman_metron.model_copy(update={"publisher": "DC", "aliases": ["The Batman"]})


def test_primary_alone(batman_comicvine: SeriesMatch) -> None:
    """Test that merging without matches keeps the primary's values."""
    merged = merge_series(batman_comicvine)

    assert merged.source == "comicvine"
    assert merged.source_id == "42721"
    assert merged.publisher == "DC Comics"
    assert merged.contributing_sources == ["comicvine"]
    assert merged.field_sources["name"] == "comicvine"
    assert "series_type" not in merged.field_sources


def test_auto_match_candidate_contributes(batman_comicvine: SeriesMatch, metron_dc: SeriesMatch) -> None:
    """Test that fields missing from the primary are filled from the match."""
    merged = merge_series(batman_comicvine, [_match(metron_dc)])

    assert merged.publisher == "DC Comics"
    assert merged.field_sources["publisher"] == "comicvine"
    assert merged.series_type == "Ongoing Series"
    assert merged.field_sources["series_type"] == "metron"
    assert merged.aliases == ["The Batman"]
    assert merged.characters == [Credit(name="Batman")]
    assert merged.contributing_sources == ["comicvine", "metron"]


def test_array_fields_are_unioned_without_duplicates(batman_comicvine: SeriesMatch, metron_dc: SeriesMatch) -> None:
    """Test that creators present in both sources appear once."""
    metron = metron_dc.model_copy(
        update={"creators": [Credit(name="scott snyder"), Credit(name="Jonathan Glapion")]}
    )

    merged = merge_series(batman_comicvine, [_match(metron)])

    assert [credit.name for credit in merged.creators] == ["Scott Snyder", "Greg Capullo", "Jonathan Glapion"]
    assert merged.field_sources["creators"] == "comicvine"


def test_low_confidence_match_needs_acceptance(batman_comicvine: SeriesMatch, metron_dc: SeriesMatch) -> None:
    """Test that a match below the threshold contributes only when accepted."""
    match = _match(metron_dc, confidence=0.9, auto=False)

    assert merge_series(batman_comicvine, [match]).series_type is None
    assert merge_series(batman_comicvine, [match], accepted_sources=["metron"]).series_type == "Ongoing Series"


def test_auto_apply_disabled(batman_comicvine: SeriesMatch, metron_dc: SeriesMatch) -> None:
    """Test that auto-match candidates are ignored when auto-apply is off."""
    merged = merge_series(batman_comicvine, [_match(metron_dc)], auto_apply_high_confidence=False)

    assert merged.contributing_sources == ["comicvine"]


def test_priority_order_decides_scalars(batman_comicvine: SeriesMatch, metron_dc: SeriesMatch) -> None:
    """Test that the source first in priority wins scalar fields."""
    merged = merge_series(batman_comicvine, [_match(metron_dc)], priority=["metron", "comicvine", "gcd"])

    assert merged.publisher == "DC"
    assert merged.field_sources["publisher"] == "metron"
    # Identity stays with the primary
    assert merged.source == "comicvine"
    assert merged.source_id == "42721"
    assert merged.description == "The New 52 Batman."
    assert merged.field_sources["description"] == "comicvine"


def test_all_values_and_overrides(batman_comicvine: SeriesMatch, metron_dc: SeriesMatch) -> None:
    """Test re-selecting a field from another contributing source."""
    merged = merge_series_all_values(batman_comicvine, [_match(metron_dc)])

    assert merged.all_field_values["publisher"] == {"comicvine": "DC Comics", "metron": "DC"}

    overridden = apply_field_overrides(merged, {"publisher": "metron"})

    assert overridden.publisher == "DC"
    assert overridden.field_sources["publisher"] == "metron"
    assert overridden.field_source_overrides == {"publisher": "metron"}


def test_override_without_value_is_ignored(batman_comicvine: SeriesMatch, metron_dc: SeriesMatch) -> None:
    """Test that overrides naming a source without a value change nothing."""
    merged = merge_series_all_values(batman_comicvine, [_match(metron_dc)], overrides={"description": "metron"})

    assert merged.description == "The New 52 Batman."
    assert merged.field_sources["description"] == "comicvine"
    assert merged.field_source_overrides == {}


def test_merge_issues() -> None:
    """Test merging one issue across sources."""
    comicvine = IssueRecord(
        source="comicvine",
        source_id="cv-1",
        number="1",
        title="Knife Trick",
        credits=[Credit(name="Scott Snyder", role="writer"), Credit(name="Greg Capullo", role="penciller")],
        characters=["Bruce Wayne"],
    )
    metron = IssueRecord(
        source="metron",
        source_id="m-1",
        number="1",
        title="The Court of Owls, Part One",
        page_count=32,
        credits=[Credit(name="scott snyder", role="writer"), Credit(name="FCO Plascencia", role="colorist")],
        characters=["bruce wayne", "Dick Grayson"],
    )

    merged = merge_issues(comicvine, [metron])

    assert merged.source_id == "cv-1"
    assert merged.title == "Knife Trick"
    assert merged.page_count == 32
    assert merged.field_sources["page_count"] == "metron"
    assert [(c.name, c.role) for c in merged.credits] == [
        ("Scott Snyder", "writer"),
        ("Greg Capullo", "penciller"),
        ("FCO Plascencia", "colorist"),
    ]
    assert merged.characters == ["Bruce Wayne", "Dick Grayson"]
    assert merged.contributing_sources == ["comicvine", "metron"]
