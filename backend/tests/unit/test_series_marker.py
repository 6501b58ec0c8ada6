"""Tests for series.json and .series-cache.json handling."""

from __future__ import annotations

import json
from pathlib import Path

from shelfarr.core.series_marker import (
    SERIES_CACHE_NAME,
    SERIES_MARKER_NAME,
    SeriesMarker,
    read_series_cache,
    read_series_marker,
    write_series_cache,
    write_series_marker,
)
from shelfarr.core.sources.models import SeriesMatch


def test_marker_written_and_read(tmp_path: Path, batman_comicvine: SeriesMatch) -> None:
    """Test that a written marker pins the same series when read back."""
    write_series_marker(tmp_path, SeriesMarker.from_series(batman_comicvine))

    marker = read_series_marker(tmp_path)

    assert marker is not None
    assert marker.series_name == "Batman"
    assert marker.summary == "The New 52 Batman."
    series = marker.to_series()
    assert series is not None
    assert series.key == ("comicvine", "42721")
    assert series.confidence == 1.0
    assert marker.issue_matching is None


def test_marker_keeps_issue_matching_reference(
    tmp_path: Path, batman_comicvine: SeriesMatch, batman_metron: SeriesMatch
) -> None:
    """Test that a different issue-matching series is stored as a reference."""
    marker = SeriesMarker.from_series(batman_comicvine, issue_matching=batman_metron, publisher="DC")
    path = write_series_marker(tmp_path, marker)

    data = json.loads(path.read_text())
    assert data["publisher"] == "DC"
    assert data["issue_matching"] == {"source": "metron", "source_id": "118", "name": "Batman", "start_year": 2011}


def test_marker_without_source(tmp_path: Path) -> None:
    """Test that a name-only marker does not pin a source record."""
    (tmp_path / SERIES_MARKER_NAME).write_text(json.dumps({"series_name": "Batman"}))

    marker = read_series_marker(tmp_path)

    assert marker is not None
    assert marker.to_series() is None


def test_unreadable_marker_is_ignored(tmp_path: Path) -> None:
    """Test that malformed markers read as absent."""
    (tmp_path / SERIES_MARKER_NAME).write_text("{not json")
    assert read_series_marker(tmp_path) is None
    assert read_series_marker(tmp_path / "missing") is None


def test_series_cache_entries_accumulate(
    tmp_path: Path, batman_comicvine: SeriesMatch, batman_metron: SeriesMatch
) -> None:
    """Test that cache writes add entries and keep existing ones."""
    saga = SeriesMatch(source="comicvine", source_id="47399", name="Saga", start_year=2012)

    write_series_cache(tmp_path, {"Batman": (batman_comicvine, batman_metron)})
    write_series_cache(tmp_path, {"Saga": (saga, None)})

    cache = read_series_cache(tmp_path)
    assert set(cache.series_mappings) == {"batman", "saga"}
    batman = cache.lookup("BATMAN")
    assert batman is not None
    assert batman.to_series().source_id == "42721"
    assert batman.issue_matching is not None
    assert batman.issue_matching.to_series().key == ("metron", "118")
    assert cache.lookup("Saga").issue_matching is None
    assert (tmp_path / SERIES_CACHE_NAME).is_file()


def test_missing_cache_is_empty(tmp_path: Path) -> None:
    """Test reading a folder without a cache."""
    assert read_series_cache(tmp_path).series_mappings == {}
