"""Metron metadata source."""

from __future__ import annotations

import re
from typing import Any

from shelfarr.core.exceptions import SourceRequestError
from shelfarr.core.sources.base import MetadataSourceAdapter
from shelfarr.core.sources.http import SourceHttpClient
from shelfarr.core.sources.models import (
    Credit,
    IssueRecord,
    SearchPagination,
    SeriesMatch,
    SeriesSearchResult,
)
from shelfarr.core.utils import _extract_numeric_id

# Metron pages are fixed at 100 results
PAGE_SIZE = 100

ROLE_MAP = {
    "writer": "writer",
    "story": "writer",
    "script": "writer",
    "plot": "writer",
    "penciller": "penciller",
    "artist": "penciller",
    "inker": "inker",
    "colorist": "colorist",
    "letterer": "letterer",
    "cover": "cover",
    "editor": "editor",
}

_SERIES_YEAR = re.compile(r"\s*\((\d{4})\)\s*$")


def _name(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("name")
    return value if isinstance(value, str) else None


def _names(items: Any) -> list[str]:
    if not isinstance(items, list):
        return []
    return [item["name"] for item in items if isinstance(item, dict) and item.get("name")]


def _credits(items: Any) -> list[Credit]:
    """Flatten Metron ``{"creator": ..., "role": [{"name": ...}]}`` credits."""
    if not isinstance(items, list):
        return []
    credits: list[Credit] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("creator"):
            continue
        for role in item.get("role") or []:
            mapped = ROLE_MAP.get(str(_name(role) or "").strip().lower())
            if mapped:
                credits.append(
                    Credit(
                        id=str(item["id"]) if item.get("id") is not None else None,
                        name=item["creator"],
                        role=mapped,
                    )
                )
    return credits


class MetronSource(MetadataSourceAdapter):
    """Metron (metron.cloud) series and issues."""

    name = "metron"

    def __init__(
        self,
        username: str | None,
        password: str | None,
        http: SourceHttpClient | None = None,
        **http_options: Any,
    ):
        self.username = username
        self.password = password
        if http is None:
            http = SourceHttpClient(
                "metron",
                http_options.pop("base_url", "https://metron.cloud/api"),
                auth=(username or "", password or ""),
                # Metron allows 30 requests per minute
                rate_limit=30,
                rate_limit_period=60,
                **http_options,
            )
        super().__init__(http)

    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    def configuration_hint(self) -> str:
        return "Add your Metron username and password (https://metron.cloud) in settings."

    async def _get(self, endpoint: str, params: dict[str, Any], operation: str) -> dict[str, Any]:
        self.require_configured()
        assert self.http is not None
        data = await self.http.get_json(endpoint, params, operation=operation)
        if not isinstance(data, dict):
            raise SourceRequestError(self.name, "Metron returned an unexpected response")
        return data

    def _series_from_item(self, item: dict[str, Any]) -> SeriesMatch:
        # List results only carry "Batman (2011)" style display names
        display_name = item.get("name") or item.get("series") or ""
        start_year = item.get("year_began")
        match = _SERIES_YEAR.search(display_name)
        if match and not item.get("name"):
            display_name = display_name[: match.start()]
            start_year = start_year or int(match.group(1))
        series_type = item.get("series_type")
        volume = item.get("volume")
        return SeriesMatch(
            source="metron",
            source_id=str(item.get("id")),
            name=display_name.strip(),
            publisher=_name(item.get("publisher")),
            start_year=start_year,
            end_year=item.get("year_end"),
            issue_count=item.get("issue_count"),
            series_type=_name(series_type),
            volume=str(volume) if volume is not None else None,
            description=item.get("desc"),
            url=item.get("resource_url"),
        )

    def _issue_from_item(self, item: dict[str, Any], series_id: str | None = None) -> IssueRecord:
        series = item.get("series") or {}
        titles = item.get("name") or []
        title = titles[0] if isinstance(titles, list) and titles else item.get("title")
        return IssueRecord(
            source="metron",
            source_id=str(item.get("id")),
            series_id=str(series.get("id")) if isinstance(series, dict) and series.get("id") else series_id,
            series_name=_name(series),
            number=item.get("number"),
            title=title if isinstance(title, str) else None,
            cover_date=item.get("cover_date"),
            store_date=item.get("store_date"),
            description=item.get("desc"),
            cover_url=item.get("image"),
            url=item.get("resource_url"),
            publisher=_name(item.get("publisher")),
            page_count=item.get("page"),
            credits=_credits(item.get("credits")),
            characters=_names(item.get("characters")),
            teams=_names(item.get("teams")),
            story_arcs=_names(item.get("arcs")),
        )

    async def search(
        self,
        query: str,
        limit: int = 10,
        offset: int = 0,
        year: int | None = None,
    ) -> SeriesSearchResult:
        params: dict[str, Any] = {"name": query, "page": offset // PAGE_SIZE + 1}
        if year:
            params["year_began"] = year
        data = await self._get("series", params, operation="search")

        page_start = (offset // PAGE_SIZE) * PAGE_SIZE
        items = [item for item in data.get("results") or [] if isinstance(item, dict)]
        window = items[offset - page_start : offset - page_start + limit]
        results = [self._series_from_item(item) for item in window]
        total = data.get("count") or len(items)
        return SeriesSearchResult(
            results=results,
            pagination=SearchPagination(
                total=total,
                offset=offset,
                limit=limit,
                has_more=offset + len(results) < total,
            ),
        )

    async def fetch_by_external_id(self, source_id: str) -> SeriesMatch | None:
        series_id = _extract_numeric_id(source_id)
        if series_id is None:
            return None
        try:
            data = await self._get(f"series/{series_id}", {}, operation="series")
        except SourceRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._series_from_item(data) if data.get("id") is not None else None

    async def fetch_issues(self, source_id: str) -> list[IssueRecord]:
        series_id = _extract_numeric_id(source_id)
        if series_id is None:
            return []
        issues: list[IssueRecord] = []
        page = 1
        while True:
            data = await self._get(
                "issue",
                {"series_id": series_id, "page": page},
                operation="issues",
            )
            items = [item for item in data.get("results") or [] if isinstance(item, dict)]
            issues.extend(self._issue_from_item(item, str(series_id)) for item in items)
            if not data.get("next") or not items:
                break
            page += 1
        return issues

    async def fetch_issue(self, issue_id: str) -> IssueRecord | None:
        numeric_id = _extract_numeric_id(issue_id)
        if numeric_id is None:
            return None
        try:
            data = await self._get(f"issue/{numeric_id}", {}, operation="issue")
        except SourceRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._issue_from_item(data)
