"""Registry of metadata source adapters, built from settings."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from shelfarr.core.config import Settings, get_settings
from shelfarr.core.exceptions import SourceConfigurationError
from shelfarr.core.sources.base import MetadataSourceAdapter
from shelfarr.core.sources.comicvine import ComicVineSource
from shelfarr.core.sources.gcd import GCDSource
from shelfarr.core.sources.metron import MetronSource
from shelfarr.core.sources.models import SourceAvailability

logger = structlog.get_logger("shelfarr.sources.registry")


class SourceRegistry:
    """Enabled adapters in merge priority order."""

    def __init__(
        self,
        adapters: Iterable[MetadataSourceAdapter],
        priority: Iterable[str] | None = None,
        enabled: Iterable[str] | None = None,
    ) -> None:
        self._adapters = {adapter.name: adapter for adapter in adapters}
        self.enabled = list(enabled) if enabled is not None else list(self._adapters)
        ordered = list(priority) if priority is not None else list(self._adapters)
        ordered.extend(name for name in self._adapters if name not in ordered)
        self.priority = ordered

    def get(self, name: str) -> MetadataSourceAdapter | None:
        if name not in self.enabled:
            return None
        return self._adapters.get(name)

    def require(self, name: str) -> MetadataSourceAdapter:
        """The enabled adapter for ``name``, with its credentials checked."""
        adapter = self.get(name)
        if adapter is None:
            raise SourceConfigurationError(name, f"Metadata source '{name}' is not enabled")
        adapter.require_configured()
        return adapter

    def enabled_sources(self) -> list[str]:
        """Enabled sources that have an adapter, in priority order."""
        return [name for name in self.priority if name in self.enabled and name in self._adapters]

    @property
    def primary_source(self) -> str | None:
        configured = [name for name in self.enabled_sources() if self._adapters[name].is_configured()]
        if configured:
            return configured[0]
        enabled = self.enabled_sources()
        return enabled[0] if enabled else None

    async def availability(self) -> list[SourceAvailability]:
        return [
            await adapter.check_availability(enabled=name in self.enabled)
            for name, adapter in sorted(
                self._adapters.items(),
                key=lambda item: self.priority.index(item[0]) if item[0] in self.priority else 99,
            )
        ]


def build_source_registry(settings: Settings | None = None) -> SourceRegistry:
    """Create adapters for every known source from settings."""
    if settings is None:
        settings = get_settings()

    cache_root = settings.cache_dir / "sources"
    common = {
        "cache_ttl_seconds": settings.source_cache_ttl_seconds,
        "timeout": settings.source_timeout_seconds,
    }
    adapters: list[MetadataSourceAdapter] = [
        ComicVineSource(
            settings.comicvine_api_key,
            base_url=settings.comicvine_base_url,
            cache_dir=cache_root / "comicvine",
            **common,
        ),
        MetronSource(
            settings.metron_username,
            settings.metron_password,
            base_url=settings.metron_base_url,
            cache_dir=cache_root / "metron",
            **common,
        ),
        GCDSource(base_url=settings.gcd_base_url, cache_dir=cache_root / "gcd", **common),
    ]
    registry = SourceRegistry(
        adapters,
        priority=settings.source_priority,
        enabled=settings.enabled_sources,
    )
    logger.info(
        "Metadata sources registered",
        enabled=registry.enabled_sources(),
        primary=registry.primary_source,
    )
    return registry


_registry: SourceRegistry | None = None


def get_source_registry() -> SourceRegistry:
    """Get or create the process-wide registry."""
    global _registry
    if _registry is None:
        _registry = build_source_registry()
    return _registry


def set_source_registry(registry: SourceRegistry | None) -> None:
    """Replace the process-wide registry (settings reloads and tests)."""
    global _registry
    _registry = registry
