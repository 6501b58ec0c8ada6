"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import zipfile
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from pathlib import Path

import pytest
from prometheus_client import REGISTRY

from shelfarr.core.comicinfo import ComicInfo, comicinfo_to_xml
from shelfarr.core.config import Settings, reload_settings
from shelfarr.core.database import (
    SessionFactory,
    create_database_engine,
    create_session_factory,
)
from shelfarr.core.exceptions import SourceError
from shelfarr.core.matching import reload_matching_config, title_similarity
from shelfarr.core.sources.base import MetadataSourceAdapter
from shelfarr.core.sources.models import (
    Credit,
    IssueRecord,
    SearchPagination,
    SeriesMatch,
    SeriesSearchResult,
)
from shelfarr.core.sources.registry import SourceRegistry
from shelfarr.db.models import metadata


@pytest.fixture(autouse=True)
def reset_prometheus_registry():
    """Reset Prometheus registry before each test to avoid duplicate metric registration.

    setup_metrics() registers the instrumentator's metrics in the global
    registry, so every test that creates an app would otherwise collide with
    the previous one.
    """
    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        REGISTRY.unregister(collector)

    yield

    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        REGISTRY.unregister(collector)


@pytest.fixture(autouse=True)
def isolated_settings(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Iterator[Settings]:
    """Point every test at its own data directory."""
    data_dir = tmp_path_factory.mktemp("data")
    monkeypatch.setenv("SHELFARR_DATA_DIR", str(data_dir))
    monkeypatch.setenv("SHELFARR_ENV", "testing")
    settings = reload_settings()
    reload_matching_config()

    yield settings

    monkeypatch.undo()
    reload_settings()
    reload_matching_config()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[SessionFactory]:
    """Session factory on a fresh database with all tables created."""
    engine = create_database_engine(tmp_path / "test.db")
    factory = create_session_factory(engine)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield factory

    await engine.dispose()


# =============================================================================
# Metadata sources
# =============================================================================


class FakeSource(MetadataSourceAdapter):
    """In-memory metadata source.

    Search returns the stored series whose title is similar to the query.
    """

    def __init__(
        self,
        name: str,
        series: Sequence[SeriesMatch] = (),
        issues: dict[str, list[IssueRecord]] | None = None,
        configured: bool = True,
    ) -> None:
        self.name = name  # type: ignore[assignment]
        super().__init__(None)
        self.series = list(series)
        self.issues = issues or {}
        self.configured = configured
        self.search_error: SourceError | None = None
        self.search_calls: list[str] = []
        self.issue_calls: list[str] = []

    def is_configured(self) -> bool:
        return self.configured

    async def search(
        self,
        query: str,
        limit: int = 10,
        offset: int = 0,
        year: int | None = None,
    ) -> SeriesSearchResult:
        self.search_calls.append(query)
        if self.search_error is not None:
            raise self.search_error
        found = [series for series in self.series if title_similarity(query, series.name) >= 0.5]
        page = found[offset : offset + limit]
        return SeriesSearchResult(
            results=page,
            pagination=SearchPagination(
                total=len(found),
                offset=offset,
                limit=limit,
                has_more=offset + len(page) < len(found),
            ),
        )

    async def fetch_by_external_id(self, source_id: str) -> SeriesMatch | None:
        return next((series for series in self.series if series.source_id == source_id), None)

    async def fetch_issues(self, source_id: str) -> list[IssueRecord]:
        self.issue_calls.append(source_id)
        return list(self.issues.get(source_id, []))


def make_issues(source: str, series_id: str, series_name: str, count: int, year: int = 2011) -> list[IssueRecord]:
    return [
        IssueRecord(
            source=source,  # type: ignore[arg-type]
            source_id=f"{series_id}-{number}",
            series_id=series_id,
            series_name=series_name,
            number=str(number),
            title=f"Chapter {number}",
            cover_date=f"{year}-{number:02d}-01",
            credits=[Credit(name="Scott Snyder", role="writer"), Credit(name="Greg Capullo", role="penciller")],
            characters=["Bruce Wayne"],
        )
        for number in range(1, count + 1)
    ]


@pytest.fixture
def batman_comicvine() -> SeriesMatch:
    return SeriesMatch(
        source="comicvine",
        source_id="42721",
        name="Batman",
        publisher="DC Comics",
        start_year=2011,
        issue_count=52,
        description="The New 52 Batman.",
        creators=[Credit(name="Scott Snyder"), Credit(name="Greg Capullo")],
    )


@pytest.fixture
def batman_metron() -> SeriesMatch:
    return SeriesMatch(
        source="metron",
        source_id="118",
        name="Batman",
        publisher="DC Comics",
        start_year=2011,
        issue_count=52,
        series_type="Ongoing Series",
        creators=[Credit(name="Scott Snyder"), Credit(name="Greg Capullo")],
        characters=[Credit(name="Batman")],
    )


@pytest.fixture
def sources(batman_comicvine: SeriesMatch, batman_metron: SeriesMatch) -> dict[str, FakeSource]:
    saga = SeriesMatch(source="comicvine", source_id="47399", name="Saga", publisher="Image", start_year=2012)
    return {
        "comicvine": FakeSource(
            "comicvine",
            [batman_comicvine, saga],
            {
                "42721": make_issues("comicvine", "42721", "Batman", 3),
                "47399": make_issues("comicvine", "47399", "Saga", 2, year=2012),
            },
        ),
        "metron": FakeSource("metron", [batman_metron], {"118": make_issues("metron", "118", "Batman", 3)}),
        "gcd": FakeSource("gcd"),
    }


@pytest.fixture
def registry(sources: dict[str, FakeSource]) -> SourceRegistry:
    return SourceRegistry(sources.values(), priority=["comicvine", "metron", "gcd"])


# =============================================================================
# Archives
# =============================================================================


@pytest.fixture
def make_cbz() -> Callable[..., Path]:
    """Build a small CBZ, optionally with embedded ComicInfo.xml."""

    def _make(path: Path, info: ComicInfo | None = None, pages: int = 2) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as zf:
            for page in range(1, pages + 1):
                zf.writestr(f"{page:03d}.jpg", b"\xff\xd8\xff" + bytes([page]) * 16)
            if info is not None:
                zf.writestr("ComicInfo.xml", comicinfo_to_xml(info))
        return path

    return _make
