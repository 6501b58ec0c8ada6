"""Metadata source adapters (ComicVine, Metron, GCD)."""

from shelfarr.core.sources.models import (
    Credit,
    IssueRecord,
    MetadataSource,
    SearchPagination,
    SeriesMatch,
    SeriesQuery,
    SeriesSearchResult,
    SourceAvailability,
)
from shelfarr.core.sources.base import MetadataSourceAdapter
from shelfarr.core.sources.comicvine import ComicVineSource
from shelfarr.core.sources.gcd import GCDSource
from shelfarr.core.sources.metron import MetronSource
from shelfarr.core.sources.registry import (
    SourceRegistry,
    build_source_registry,
    get_source_registry,
    set_source_registry,
)

__all__ = [
    "Credit",
    "IssueRecord",
    "MetadataSource",
    "SearchPagination",
    "SeriesMatch",
    "SeriesQuery",
    "SeriesSearchResult",
    "SourceAvailability",
    "MetadataSourceAdapter",
    "ComicVineSource",
    "MetronSource",
    "GCDSource",
    "SourceRegistry",
    "build_source_registry",
    "get_source_registry",
    "set_source_registry",
]
