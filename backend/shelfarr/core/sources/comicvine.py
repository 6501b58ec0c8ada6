"""ComicVine metadata source."""

from __future__ import annotations

from typing import Any

from shelfarr.core.exceptions import SourceConfigurationError, SourceRequestError
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

VOLUME_PREFIX = "4050"
ISSUE_PREFIX = "4000"

# ComicVine status codes: 1 OK, 100 invalid API key, 101 object not found, 107 rate limited
STATUS_OK = 1
STATUS_INVALID_KEY = 100
STATUS_NOT_FOUND = 101

ISSUE_PAGE_SIZE = 100

# ComicVine person_credits roles, mapped to our credit roles
ROLE_MAP = {
    "writer": "writer",
    "plotter": "writer",
    "scripter": "writer",
    "penciler": "penciller",
    "penciller": "penciller",
    "artist": "penciller",
    "inker": "inker",
    "colorist": "colorist",
    "colourist": "colorist",
    "letterer": "letterer",
    "cover": "cover",
    "editor": "editor",
}


def _name(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("name")
    return None


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _image_url(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    return value.get("medium_url") or value.get("original_url") or value.get("super_url")


def _credits(items: Any) -> list[Credit]:
    if not isinstance(items, list):
        return []
    credits: list[Credit] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        credits.append(
            Credit(
                id=str(item["id"]) if item.get("id") is not None else None,
                name=item["name"],
                count=_int_or_none(item.get("count")),
            )
        )
    return credits


def _person_credits(items: Any) -> list[Credit]:
    """Split "writer, penciler" style roles into one credit per role."""
    if not isinstance(items, list):
        return []
    credits: list[Credit] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        for raw_role in str(item.get("role") or "").split(","):
            role = ROLE_MAP.get(raw_role.strip().lower())
            if role is None:
                continue
            credits.append(
                Credit(
                    id=str(item["id"]) if item.get("id") is not None else None,
                    name=item["name"],
                    role=role,
                )
            )
    return credits


def _names(items: Any) -> list[str]:
    if not isinstance(items, list):
        return []
    return [item["name"] for item in items if isinstance(item, dict) and item.get("name")]


class ComicVineSource(MetadataSourceAdapter):
    """ComicVine (comicvine.gamespot.com) volumes and issues."""

    name = "comicvine"

    def __init__(self, api_key: str | None, http: SourceHttpClient | None = None, **http_options: Any):
        self.api_key = api_key
        if http is None:
            http = SourceHttpClient(
                "comicvine",
                http_options.pop("base_url", "https://comicvine.gamespot.com/api"),
                default_params={"format": "json", "api_key": api_key or ""},
                secret_params=("api_key",),
                rate_limit=40,
                rate_limit_period=60,
                **http_options,
            )
        super().__init__(http)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def configuration_hint(self) -> str:
        return "Add a ComicVine API key (https://comicvine.gamespot.com/api/) in settings."

    async def _get(self, endpoint: str, params: dict[str, Any], operation: str) -> dict[str, Any]:
        self.require_configured()
        assert self.http is not None
        data = await self.http.get_json(endpoint, params, operation=operation)
        if not isinstance(data, dict):
            raise SourceRequestError(self.name, "ComicVine returned an unexpected response")
        status_code = data.get("status_code", STATUS_OK)
        if status_code == STATUS_INVALID_KEY:
            raise SourceConfigurationError(
                self.name, "ComicVine rejected the API key", hint=self.configuration_hint()
            )
        if status_code not in (STATUS_OK, STATUS_NOT_FOUND):
            raise SourceRequestError(
                self.name, f"ComicVine error {status_code}: {data.get('error') or 'unknown'}"
            )
        return data

    def _series_from_volume(self, volume: dict[str, Any]) -> SeriesMatch:
        aliases = [a.strip() for a in str(volume.get("aliases") or "").splitlines() if a.strip()]
        first_issue = volume.get("first_issue") or {}
        last_issue = volume.get("last_issue") or {}
        return SeriesMatch(
            source="comicvine",
            source_id=str(volume.get("id")),
            name=volume.get("name") or "",
            publisher=_name(volume.get("publisher")),
            start_year=_int_or_none(volume.get("start_year")),
            issue_count=_int_or_none(volume.get("count_of_issues")),
            description=volume.get("description"),
            short_description=volume.get("deck"),
            cover_url=_image_url(volume.get("image")),
            url=volume.get("site_detail_url"),
            aliases=aliases,
            characters=_credits(volume.get("characters")),
            creators=_credits(volume.get("people")),
            locations=_credits(volume.get("locations")),
            objects=_credits(volume.get("objects")),
            first_issue_number=first_issue.get("issue_number") if isinstance(first_issue, dict) else None,
            last_issue_number=last_issue.get("issue_number") if isinstance(last_issue, dict) else None,
        )

    def _issue_from_item(self, item: dict[str, Any], series_id: str | None = None) -> IssueRecord:
        volume = item.get("volume") or {}
        return IssueRecord(
            source="comicvine",
            source_id=str(item.get("id")),
            series_id=str(volume.get("id")) if volume.get("id") is not None else series_id,
            series_name=volume.get("name"),
            number=item.get("issue_number"),
            title=item.get("name"),
            cover_date=item.get("cover_date"),
            store_date=item.get("store_date"),
            description=item.get("description"),
            cover_url=_image_url(item.get("image")),
            url=item.get("site_detail_url"),
            credits=_person_credits(item.get("person_credits")),
            characters=_names(item.get("character_credits")),
            teams=_names(item.get("team_credits")),
            locations=_names(item.get("location_credits")),
            story_arcs=_names(item.get("story_arc_credits")),
        )

    async def search(
        self,
        query: str,
        limit: int = 10,
        offset: int = 0,
        year: int | None = None,
    ) -> SeriesSearchResult:
        # ComicVine search pages by page number, so offsets snap to page boundaries
        page = offset // limit + 1 if limit else 1
        data = await self._get(
            "search",
            {"query": query, "resources": "volume", "limit": limit, "page": page},
            operation="search",
        )
        results = [
            self._series_from_volume(item)
            for item in data.get("results") or []
            if isinstance(item, dict) and item.get("resource_type", "volume") == "volume"
        ]
        total = _int_or_none(data.get("number_of_total_results")) or len(results)
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
        volume_id = _extract_numeric_id(source_id)
        if volume_id is None:
            return None
        data = await self._get(f"volume/{VOLUME_PREFIX}-{volume_id}", {}, operation="series")
        volume = data.get("results")
        if not isinstance(volume, dict) or not volume:
            return None
        return self._series_from_volume(volume)

    async def fetch_issues(self, source_id: str) -> list[IssueRecord]:
        volume_id = _extract_numeric_id(source_id)
        if volume_id is None:
            return []
        issues: list[IssueRecord] = []
        offset = 0
        while True:
            data = await self._get(
                "issues",
                {
                    "filter": f"volume:{volume_id}",
                    "sort": "cover_date:asc",
                    "limit": ISSUE_PAGE_SIZE,
                    "offset": offset,
                },
                operation="issues",
            )
            page = [item for item in data.get("results") or [] if isinstance(item, dict)]
            issues.extend(self._issue_from_item(item, str(volume_id)) for item in page)
            total = _int_or_none(data.get("number_of_total_results")) or 0
            offset += len(page)
            if not page or offset >= total:
                break
        return issues

    async def fetch_issue(self, issue_id: str) -> IssueRecord | None:
        numeric_id = _extract_numeric_id(issue_id)
        if numeric_id is None:
            return None
        data = await self._get(f"issue/{ISSUE_PREFIX}-{numeric_id}", {}, operation="issue")
        item = data.get("results")
        if not isinstance(item, dict) or not item:
            return None
        return self._issue_from_item(item)
