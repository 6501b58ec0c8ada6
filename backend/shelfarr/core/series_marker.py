"""Folder-level series markers.

``series.json`` pins every archive in a folder to one series.
``.series-cache.json`` remembers the series chosen for each name in a folder
that mixes several series.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

from shelfarr.core.sources.models import MetadataSource, SeriesMatch
from shelfarr.core.utils import series_cache_key

logger = structlog.get_logger("shelfarr.series_marker")

SERIES_MARKER_NAME = "series.json"
SERIES_CACHE_NAME = ".series-cache.json"


class SeriesReference(BaseModel):
    source: MetadataSource
    source_id: str
    name: str
    start_year: int | None = None

    def to_series(self) -> SeriesMatch:
        return SeriesMatch(
            source=self.source,
            source_id=self.source_id,
            name=self.name,
            start_year=self.start_year,
            confidence=1.0,
        )


class SeriesMarker(BaseModel):
    series_name: str
    source: MetadataSource | None = None
    source_id: str | None = None
    start_year: int | None = None
    end_year: int | None = None
    publisher: str | None = None
    issue_count: int | None = None
    summary: str | None = None
    cover_url: str | None = None
    site_url: str | None = None
    issue_matching: SeriesReference | None = None
    last_updated: str | None = None

    def to_series(self) -> SeriesMatch | None:
        """The pinned series, when the marker names a source record."""
        if not self.source or not self.source_id:
            return None
        return SeriesMatch(
            source=self.source,
            source_id=self.source_id,
            name=self.series_name,
            publisher=self.publisher,
            start_year=self.start_year,
            end_year=self.end_year,
            issue_count=self.issue_count,
            description=self.summary,
            cover_url=self.cover_url,
            url=self.site_url,
            confidence=1.0,
        )

    @classmethod
    def from_series(
        cls,
        series: SeriesMatch,
        issue_matching: SeriesMatch | None = None,
        publisher: str | None = None,
    ) -> SeriesMarker:
        reference = None
        if issue_matching is not None and issue_matching.key != series.key:
            reference = SeriesReference(
                source=issue_matching.source,
                source_id=issue_matching.source_id,
                name=issue_matching.name,
                start_year=issue_matching.start_year,
            )
        return cls(
            series_name=series.name,
            source=series.source,
            source_id=series.source_id,
            start_year=series.start_year,
            end_year=series.end_year,
            publisher=publisher if publisher is not None else series.publisher,
            issue_count=series.issue_count,
            summary=series.description,
            cover_url=series.cover_url,
            site_url=series.url,
            issue_matching=reference,
            last_updated=datetime.now(timezone.utc).isoformat(),
        )


class CachedSeries(BaseModel):
    source: MetadataSource
    source_id: str
    name: str
    start_year: int | None = None
    end_year: int | None = None
    publisher: str | None = None
    issue_count: int | None = None
    description: str | None = None
    cover_url: str | None = None
    url: str | None = None
    issue_matching: SeriesReference | None = None

    def to_series(self) -> SeriesMatch:
        return SeriesMatch(
            source=self.source,
            source_id=self.source_id,
            name=self.name,
            publisher=self.publisher,
            start_year=self.start_year,
            end_year=self.end_year,
            issue_count=self.issue_count,
            description=self.description,
            cover_url=self.cover_url,
            url=self.url,
            confidence=1.0,
        )


class SeriesCache(BaseModel):
    series_mappings: dict[str, CachedSeries] = Field(default_factory=dict)
    last_updated: str | None = None

    def lookup(self, name: str | None) -> CachedSeries | None:
        return self.series_mappings.get(series_cache_key(name))


def _write_json_atomic(path: Path, payload: str) -> None:
    fd, temp_name = tempfile.mkstemp(suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(temp_name, path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _read_model(path: Path, model: type[BaseModel]) -> BaseModel | None:
    if not path.is_file():
        return None
    try:
        return model.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Ignoring unreadable series marker", path=str(path), error=str(exc))
        return None


def read_series_marker(folder: str | Path) -> SeriesMarker | None:
    marker = _read_model(Path(folder) / SERIES_MARKER_NAME, SeriesMarker)
    return marker if isinstance(marker, SeriesMarker) else None


def write_series_marker(folder: str | Path, marker: SeriesMarker) -> Path:
    path = Path(folder) / SERIES_MARKER_NAME
    _write_json_atomic(path, marker.model_dump_json(indent=2, exclude_none=True))
    logger.info("Wrote series marker", path=str(path), series=marker.series_name)
    return path


def read_series_cache(folder: str | Path) -> SeriesCache:
    cache = _read_model(Path(folder) / SERIES_CACHE_NAME, SeriesCache)
    return cache if isinstance(cache, SeriesCache) else SeriesCache()


def write_series_cache(
    folder: str | Path,
    entries: Mapping[str, tuple[SeriesMatch, SeriesMatch | None]],
) -> Path:
    """Add or replace cache entries, keeping entries for other names.

    Args:
        folder: Folder holding the archives.
        entries: Series name -> (selected series, issue-matching series).
    """
    path = Path(folder) / SERIES_CACHE_NAME
    cache = read_series_cache(folder)
    for name, (series, issue_matching) in entries.items():
        reference = None
        if issue_matching is not None and issue_matching.key != series.key:
            reference = SeriesReference(
                source=issue_matching.source,
                source_id=issue_matching.source_id,
                name=issue_matching.name,
                start_year=issue_matching.start_year,
            )
        cache.series_mappings[series_cache_key(name)] = CachedSeries(
            source=series.source,
            source_id=series.source_id,
            name=series.name,
            start_year=series.start_year,
            end_year=series.end_year,
            publisher=series.publisher,
            issue_count=series.issue_count,
            description=series.description,
            cover_url=series.cover_url,
            url=series.url,
            issue_matching=reference,
        )
    cache.last_updated = datetime.now(timezone.utc).isoformat()
    _write_json_atomic(path, cache.model_dump_json(indent=2, exclude_none=True))
    logger.info("Wrote series cache", path=str(path), entries=len(cache.series_mappings))
    return path
