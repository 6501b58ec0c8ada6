"""Base abstract class for metadata source adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog

from shelfarr.core.exceptions import SourceConfigurationError
from shelfarr.core.sources.http import SourceHttpClient
from shelfarr.core.sources.models import (
    IssueRecord,
    MetadataSource,
    SeriesMatch,
    SeriesSearchResult,
    SourceAvailability,
)


class MetadataSourceAdapter(ABC):
    """Uniform interface to one external metadata provider.

    Adapters return records without confidence; callers score them against
    whatever they are matching. Errors are reported as
    ``SourceConfigurationError`` (credentials) or ``SourceRequestError``
    (network, timeout, unexpected response). An empty result means the
    source found nothing.
    """

    name: MetadataSource

    def __init__(self, http: SourceHttpClient | None = None) -> None:
        self.http = http
        self.logger = structlog.get_logger(f"shelfarr.sources.{self.name}")

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the adapter has the credentials it needs."""

    @abstractmethod
    async def search(
        self,
        query: str,
        limit: int = 10,
        offset: int = 0,
        year: int | None = None,
    ) -> SeriesSearchResult:
        """Search series by free text.

        Args:
            query: Series name to search for
            limit: Page size
            offset: Number of results to skip
            year: Optional start year hint (sources may ignore it)

        Returns:
            One page of unscored results with pagination
        """

    @abstractmethod
    async def fetch_by_external_id(self, source_id: str) -> SeriesMatch | None:
        """Fetch one series with its rich fields, or None if the id is unknown."""

    @abstractmethod
    async def fetch_issues(self, source_id: str) -> list[IssueRecord]:
        """Fetch every issue of a series, ordered as the source orders them."""

    async def fetch_issue(self, issue_id: str) -> IssueRecord | None:
        """Fetch one issue with credits and content lists.

        Sources whose issue list already carries everything return None and
        callers keep the list record.
        """
        return None

    def require_configured(self) -> None:
        if not self.is_configured():
            raise SourceConfigurationError(
                self.name,
                f"{self.name} is not configured",
                hint=self.configuration_hint(),
            )

    def configuration_hint(self) -> str:
        return f"Add {self.name} credentials in settings."

    async def check_availability(self, enabled: bool = True) -> SourceAvailability:
        configured = self.is_configured()
        return SourceAvailability(
            source=self.name,
            enabled=enabled,
            configured=configured,
            message=None if configured else self.configuration_hint(),
        )
