"""Tests for the source HTTP client and adapters, against mocked transports."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from shelfarr.core.exceptions import SourceConfigurationError, SourceRequestError
from shelfarr.core.sources.comicvine import ComicVineSource
from shelfarr.core.sources.gcd import GCDSource
from shelfarr.core.sources.http import USER_AGENT, SourceHttpClient
from shelfarr.core.sources.metron import MetronSource
from shelfarr.core.sources.registry import SourceRegistry, build_source_registry


class Recorder:
    """Mock transport handler replaying queued responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _client(handler, tmp_path: Path | None = None, **kwargs) -> SourceHttpClient:
    return SourceHttpClient(
        kwargs.pop("source", "comicvine"),
        kwargs.pop("base_url", "https://api.test"),
        rate_limit=1000,
        rate_limit_period=1,
        cache_dir=tmp_path,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestHttpClient:
    async def test_get_json(self):
        recorder = Recorder(httpx.Response(200, json={"ok": True}))
        client = _client(recorder, default_params={"format": "json"})

        data = await client.get_json("volume/4050-796", {"field_list": "id"})

        assert data == {"ok": True}
        request = recorder.requests[0]
        assert request.url.path == "/volume/4050-796/"
        assert request.url.params["format"] == "json"
        assert request.url.params["field_list"] == "id"
        assert request.headers["User-Agent"] == USER_AGENT

    async def test_rejected_credentials(self):
        client = _client(Recorder(httpx.Response(401)))
        with pytest.raises(SourceConfigurationError, match="HTTP 401"):
            await client.get_json("search")

    async def test_server_error(self):
        client = _client(Recorder(httpx.Response(500)))
        with pytest.raises(SourceRequestError) as exc_info:
            await client.get_json("search")
        assert exc_info.value.status_code == 500
        assert exc_info.value.source == "comicvine"

    async def test_invalid_json(self):
        client = _client(Recorder(httpx.Response(200, text="<html>")))
        with pytest.raises(SourceRequestError, match="invalid JSON"):
            await client.get_json("search")

    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler, max_retries=0)
        with pytest.raises(SourceRequestError, match="request failed"):
            await client.get_json("search")

    async def test_rate_limited_request_is_retried(self):
        recorder = Recorder(httpx.Response(429), httpx.Response(200, json={"page": 1}))
        client = _client(recorder, max_retries=1)

        assert await client.get_json("search") == {"page": 1}
        assert len(recorder.requests) == 2

    async def test_responses_are_cached(self, tmp_path: Path):
        recorder = Recorder(httpx.Response(200, json={"results": [1]}))
        client = _client(recorder, tmp_path, default_params={"api_key": "secret"}, secret_params=("api_key",))

        first = await client.get_json("search", {"query": "Batman"})
        second = await client.get_json("search", {"query": "Batman"})
        await client.get_json("search", {"query": "Batman"}, use_cache=False)

        assert first == second == {"results": [1]}
        assert len(recorder.requests) == 2
        cached = list(tmp_path.glob("*.json"))
        assert len(cached) == 1
        assert "secret" not in cached[0].name


class TestComicVine:
    def _source(self, handler, api_key: str | None = "key") -> ComicVineSource:
        http = _client(handler, base_url="https://cv.test/api", default_params={"format": "json", "api_key": api_key or ""})
        return ComicVineSource(api_key, http=http)

    async def test_search(self):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "status_code": 1,
                    "number_of_total_results": 25,
                    "results": [
                        {
                            "resource_type": "volume",
                            "id": 42721,
                            "name": "Batman",
                            "publisher": {"name": "DC Comics"},
                            "start_year": "2011",
                            "count_of_issues": 52,
                            "aliases": "The Batman\n\nBatman (New 52)",
                            "image": {"medium_url": "https://cv.test/m.jpg"},
                            "people": [{"id": 40439, "name": "Scott Snyder", "count": "40"}],
                        }
                    ],
                },
            )
        )

        result = await self._source(recorder).search("Batman", limit=10, offset=10)

        assert recorder.requests[0].url.params["page"] == "2"
        series = result.results[0]
        assert series.key == ("comicvine", "42721")
        assert series.publisher == "DC Comics"
        assert series.start_year == 2011
        assert series.aliases == ["The Batman", "Batman (New 52)"]
        assert series.cover_url == "https://cv.test/m.jpg"
        assert series.creators[0].count == 40
        assert result.pagination.total == 25
        assert result.pagination.has_more is True

    async def test_invalid_api_key_status(self):
        source = self._source(Recorder(httpx.Response(200, json={"status_code": 100, "error": "Invalid API Key"})))
        with pytest.raises(SourceConfigurationError):
            await source.search("Batman")

    async def test_unconfigured_source_makes_no_request(self):
        recorder = Recorder(httpx.Response(200, json={}))
        source = self._source(recorder, api_key=None)

        assert source.is_configured() is False
        with pytest.raises(SourceConfigurationError):
            await source.search("Batman")
        assert recorder.requests == []
        availability = await source.check_availability()
        assert availability.configured is False
        assert "API key" in availability.message

    async def test_fetch_issues_pages_through_results(self):
        def handler(request: httpx.Request) -> httpx.Response:
            offset = int(request.url.params["offset"])
            assert request.url.params["filter"] == "volume:42721"
            number = offset + 1
            return httpx.Response(
                200,
                json={
                    "status_code": 1,
                    "number_of_total_results": 2,
                    "results": [
                        {
                            "id": 1000 + number,
                            "issue_number": str(number),
                            "name": f"Part {number}",
                            "cover_date": f"2011-1{number}-01",
                            "volume": {"id": 42721, "name": "Batman"},
                            "person_credits": [{"id": 1, "name": "Scott Snyder", "role": "writer, cover"}],
                            "character_credits": [{"name": "Batman"}],
                        }
                    ],
                },
            )

        issues = await self._source(handler).fetch_issues("4050-42721")

        assert [issue.number for issue in issues] == ["1", "2"]
        assert issues[0].series_id == "42721"
        assert [(credit.name, credit.role) for credit in issues[0].credits] == [
            ("Scott Snyder", "writer"),
            ("Scott Snyder", "cover"),
        ]
        assert issues[1].characters == ["Batman"]


class TestMetron:
    def _source(self, handler) -> MetronSource:
        http = _client(handler, source="metron", base_url="https://metron.test/api")
        return MetronSource("user", "pass", http=http)

    async def test_search_splits_display_name(self):
        recorder = Recorder(
            httpx.Response(
                200,
                json={"count": 1, "results": [{"id": 118, "series": "Batman (2011)", "issue_count": 52, "volume": 2}]},
            )
        )

        result = await self._source(recorder).search("Batman", year=2011)

        assert recorder.requests[0].url.params["year_began"] == "2011"
        series = result.results[0]
        assert (series.name, series.start_year, series.volume) == ("Batman", 2011, "2")
        assert result.pagination.has_more is False

    async def test_fetch_issues_follows_next(self):
        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            return httpx.Response(
                200,
                json={
                    "next": "https://metron.test/api/issue/?page=2" if page == 1 else None,
                    "results": [
                        {
                            "id": 500 + page,
                            "number": str(page),
                            "series": {"id": 118, "name": "Batman"},
                            "name": [f"Story {page}"],
                            "credits": [{"id": 9, "creator": "Greg Capullo", "role": [{"name": "Penciller"}]}],
                        }
                    ],
                },
            )

        issues = await self._source(handler).fetch_issues("118")

        assert [issue.source_id for issue in issues] == ["501", "502"]
        assert issues[0].title == "Story 1"
        assert issues[0].credits[0].role == "penciller"

    async def test_missing_series_is_none(self):
        source = self._source(Recorder(httpx.Response(404)))
        assert await source.fetch_by_external_id("999") is None

    def test_configuration(self):
        assert MetronSource(None, None).is_configured() is False
        assert MetronSource("user", "pass").is_configured() is True


def test_registry_order_and_primary(isolated_settings) -> None:
    """Test that the registry follows priority and picks the first configured source."""
    registry = build_source_registry(isolated_settings)

    assert registry.enabled_sources() == ["comicvine", "metron", "gcd"]
    assert registry.primary_source == "gcd"
    assert registry.get("comicvine") is not None


def test_registry_disabled_sources() -> None:
    """Test that disabled sources are invisible."""
    registry = SourceRegistry([GCDSource(), MetronSource("u", "p")], priority=["metron", "gcd"], enabled=["gcd"])

    assert registry.enabled_sources() == ["gcd"]
    assert registry.get("metron") is None
    with pytest.raises(SourceConfigurationError):
        registry.require("metron")
    assert registry.require("gcd").name == "gcd"
