"""Records returned by metadata sources."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MetadataSource = Literal["comicvine", "metron", "gcd"]


class Credit(BaseModel):
    """A character, creator, location or object credited on a series or issue."""

    model_config = ConfigDict(frozen=True)

    name: str
    id: str | None = None
    role: str | None = None  # creators only: "writer", "penciller", ...
    count: int | None = None  # appearances across the series, when the source reports it


class SeriesQuery(BaseModel):
    """What we know about a series before asking any source."""

    series: str
    year: int | None = None
    publisher: str | None = None
    issue_count: int | None = None
    creators: list[str] = Field(default_factory=list)  # writer/penciller names from existing ComicInfo

    def text(self) -> str:
        return self.series.strip()


class SeriesMatch(BaseModel):
    """A candidate series from one source.

    ``confidence`` is the result of comparing the candidate against a query, so
    the same series carries different values in different searches.
    """

    model_config = ConfigDict(frozen=True)

    source: MetadataSource
    source_id: str
    name: str
    publisher: str | None = None
    start_year: int | None = None
    end_year: int | None = None
    issue_count: int | None = None
    series_type: str | None = None
    volume: str | None = None
    description: str | None = None
    short_description: str | None = None
    cover_url: str | None = None
    url: str | None = None
    aliases: list[str] = Field(default_factory=list)
    characters: list[Credit] = Field(default_factory=list)
    creators: list[Credit] = Field(default_factory=list)
    locations: list[Credit] = Field(default_factory=list)
    objects: list[Credit] = Field(default_factory=list)
    first_issue_number: str | None = None
    last_issue_number: str | None = None
    confidence: float = 0.0

    @property
    def key(self) -> tuple[str, str]:
        return (self.source, self.source_id)


class IssueRecord(BaseModel):
    """One issue of a series as reported by a source."""

    model_config = ConfigDict(frozen=True)

    source: MetadataSource
    source_id: str
    series_id: str | None = None
    series_name: str | None = None
    number: str | None = None
    title: str | None = None
    cover_date: str | None = None  # YYYY-MM-DD, day/month may be "01" placeholders
    store_date: str | None = None
    description: str | None = None
    cover_url: str | None = None
    url: str | None = None
    publisher: str | None = None
    page_count: int | None = None
    credits: list[Credit] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    teams: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    story_arcs: list[str] = Field(default_factory=list)


class SearchPagination(BaseModel):
    total: int = 0
    offset: int = 0
    limit: int = 0
    has_more: bool = False


class SeriesSearchResult(BaseModel):
    results: list[SeriesMatch] = Field(default_factory=list)
    pagination: SearchPagination = Field(default_factory=SearchPagination)


class SourceAvailability(BaseModel):
    source: MetadataSource
    enabled: bool
    configured: bool
    message: str | None = None
