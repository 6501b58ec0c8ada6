"""Grand Comics Database metadata source."""

from __future__ import annotations

import re
from typing import Any
from urllib import parse as urllib_parse

from shelfarr.core.exceptions import SourceRequestError
from shelfarr.core.sources.base import MetadataSourceAdapter
from shelfarr.core.sources.http import SourceHttpClient
from shelfarr.core.sources.models import (
    IssueRecord,
    SearchPagination,
    SeriesMatch,
    SeriesSearchResult,
)
from shelfarr.core.utils import _extract_numeric_id

# "1 [Direct Edition]" -> "1"
_DESCRIPTOR_NUMBER = re.compile(r"^\s*#?\s*([^\s\[]+)")


def _id_from_api_url(value: Any) -> str | None:
    if not value:
        return None
    numeric_id = _extract_numeric_id(str(value).rstrip("/").split("?")[0])
    return str(numeric_id) if numeric_id is not None else None


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class GCDSource(MetadataSourceAdapter):
    """comics.org public API. No credentials; publisher links are not resolved."""

    name = "gcd"

    def __init__(self, http: SourceHttpClient | None = None, **http_options: Any):
        if http is None:
            http = SourceHttpClient(
                "gcd",
                http_options.pop("base_url", "https://www.comics.org/api"),
                default_params={"format": "json"},
                rate_limit=20,
                rate_limit_period=60,
                **http_options,
            )
        super().__init__(http)

    def is_configured(self) -> bool:
        return True

    async def _get(self, endpoint: str, params: dict[str, Any], operation: str) -> Any:
        assert self.http is not None
        return await self.http.get_json(endpoint, params, operation=operation)

    def _series_from_item(self, item: dict[str, Any]) -> SeriesMatch:
        publisher = item.get("publisher_name") or item.get("publisher")
        if isinstance(publisher, str) and publisher.startswith("http"):
            publisher = None
        descriptors = item.get("issue_descriptors") or []
        return SeriesMatch(
            source="gcd",
            source_id=_id_from_api_url(item.get("api_url")) or str(item.get("id")),
            name=item.get("name") or "",
            publisher=publisher,
            start_year=_int_or_none(item.get("year_began")),
            end_year=_int_or_none(item.get("year_ended")),
            issue_count=len(descriptors) or _int_or_none(item.get("issue_count")),
            series_type=item.get("publishing_format") or None,
            description=item.get("notes") or None,
            url=item.get("api_url"),
            first_issue_number=self._descriptor_number(descriptors[0]) if descriptors else None,
            last_issue_number=self._descriptor_number(descriptors[-1]) if descriptors else None,
        )

    @staticmethod
    def _descriptor_number(descriptor: Any) -> str | None:
        match = _DESCRIPTOR_NUMBER.match(str(descriptor or ""))
        return match.group(1) if match else None

    async def search(
        self,
        query: str,
        limit: int = 10,
        offset: int = 0,
        year: int | None = None,
    ) -> SeriesSearchResult:
        endpoint = f"series/name/{urllib_parse.quote(query, safe='')}"
        if year:
            endpoint = f"{endpoint}/year/{year}"
        try:
            data = await self._get(endpoint, {}, operation="search")
        except SourceRequestError as exc:
            if exc.status_code == 404:
                return SeriesSearchResult(pagination=SearchPagination(offset=offset, limit=limit))
            raise

        items = data.get("results") if isinstance(data, dict) else data
        items = [item for item in items or [] if isinstance(item, dict)]
        window = items[offset : offset + limit]
        total = data.get("count", len(items)) if isinstance(data, dict) else len(items)
        return SeriesSearchResult(
            results=[self._series_from_item(item) for item in window],
            pagination=SearchPagination(
                total=total,
                offset=offset,
                limit=limit,
                has_more=offset + len(window) < min(total, len(items)),
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
        if not isinstance(data, dict):
            return None
        data.setdefault("api_url", f"series/{series_id}/")
        return self._series_from_item(data)

    async def fetch_issues(self, source_id: str) -> list[IssueRecord]:
        """Issues from the series record's descriptors.

        GCD lists issues as API links plus "number [variant]" descriptors;
        fetching every issue record would cost one request per issue.
        """
        series_id = _extract_numeric_id(source_id)
        if series_id is None:
            return []
        data = await self._get(f"series/{series_id}", {}, operation="issues")
        if not isinstance(data, dict):
            return []
        links = data.get("active_issues") or []
        descriptors = data.get("issue_descriptors") or []
        issues: list[IssueRecord] = []
        for index, link in enumerate(links):
            descriptor = descriptors[index] if index < len(descriptors) else None
            issues.append(
                IssueRecord(
                    source="gcd",
                    source_id=_id_from_api_url(link) or f"{series_id}-{index + 1}",
                    series_id=str(series_id),
                    series_name=data.get("name"),
                    number=self._descriptor_number(descriptor),
                    url=link,
                )
            )
        return issues

    async def fetch_issue(self, issue_id: str) -> IssueRecord | None:
        numeric_id = _extract_numeric_id(issue_id)
        if numeric_id is None:
            return None
        data = await self._get(f"issue/{numeric_id}", {}, operation="issue")
        if not isinstance(data, dict):
            return None
        page_count = data.get("page_count")
        return IssueRecord(
            source="gcd",
            source_id=str(numeric_id),
            series_id=_id_from_api_url(data.get("series")),
            series_name=data.get("series_name"),
            number=data.get("number") or self._descriptor_number(data.get("descriptor")),
            title=data.get("title") or None,
            cover_date=data.get("key_date") or None,
            store_date=data.get("on_sale_date") or None,
            description=data.get("notes") or None,
            cover_url=data.get("cover"),
            url=data.get("api_url"),
            page_count=int(float(page_count)) if page_count not in (None, "") else None,
        )
