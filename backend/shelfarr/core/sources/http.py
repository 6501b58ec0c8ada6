"""Rate-limited, retrying, disk-caching HTTP client shared by source adapters."""

from __future__ import annotations

import asyncio
import hashlib
import json
import random
import time
from collections import deque
from pathlib import Path
from typing import Any

import httpx
import structlog

from shelfarr.core.exceptions import SourceConfigurationError, SourceRequestError
from shelfarr.core.metrics import source_request_duration_seconds, source_requests_total

logger = structlog.get_logger("shelfarr.sources.http")

USER_AGENT = "Shelfarr/0.1 (metadata matcher)"


class SourceHttpClient:
    """JSON client for one metadata source.

    Features:
    - Sliding-window rate limiting with burst prevention on cold start
    - Exponential backoff with jitter on HTTP 420/429 and network errors
    - Response caching to disk, keyed by endpoint and params
    - 401/403 reported as configuration errors, everything else as request errors
    """

    def __init__(
        self,
        source: str,
        base_url: str,
        *,
        default_params: dict[str, Any] | None = None,
        auth: tuple[str, str] | None = None,
        secret_params: tuple[str, ...] = (),
        rate_limit: int = 40,
        rate_limit_period: int = 60,
        max_retries: int = 3,
        timeout: float = 15.0,
        cache_dir: Path | None = None,
        cache_ttl_seconds: int = 86400,
        trailing_slash: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            source: Source name, used for logs, metrics and errors.
            base_url: API root, without trailing slash.
            default_params: Query parameters sent with every request.
            auth: Optional HTTP basic auth credentials.
            secret_params: Parameter names masked in logs and excluded from cache keys.
            rate_limit: Maximum requests per ``rate_limit_period``.
            rate_limit_period: Rate limit window in seconds.
            max_retries: Retries on rate limiting or network errors.
            timeout: Per-request timeout in seconds.
            cache_dir: Directory for cached responses; ``None`` disables caching.
            cache_ttl_seconds: Age after which cached responses are ignored.
            trailing_slash: Whether endpoint URLs end with "/".
            transport: Custom httpx transport (tests use ``httpx.MockTransport``).
        """
        self.source = source
        self.base_url = base_url.rstrip("/")
        self.default_params = dict(default_params or {})
        self.auth = auth
        self.secret_params = secret_params
        self.rate_limit = rate_limit
        self.rate_limit_period = rate_limit_period
        self.max_retries = max_retries
        self.timeout = timeout
        self.cache_dir = cache_dir
        self.cache_ttl_seconds = cache_ttl_seconds
        self.trailing_slash = trailing_slash
        self.transport = transport

        self._request_times: deque[float] = deque()
        self._rate_limit_lock = asyncio.Lock()

        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _get_cache_key(self, endpoint: str, params: dict[str, Any]) -> str:
        sorted_params = sorted((k, v) for k, v in params.items() if k not in self.secret_params)
        cache_data = f"{self.source}:{endpoint}:{json.dumps(sorted_params, sort_keys=True)}"
        return hashlib.sha256(cache_data.encode()).hexdigest()

    def _load_from_cache(self, cache_key: str) -> Any | None:
        if self.cache_dir is None:
            return None
        cache_path = self.cache_dir / f"{cache_key}.json"
        if not cache_path.exists():
            return None
        if time.time() - cache_path.stat().st_mtime > self.cache_ttl_seconds:
            return None
        try:
            with cache_path.open() as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load cache", source=self.source, cache_key=cache_key[:8], error=str(e))
            return None

    def _save_to_cache(self, cache_key: str, data: Any) -> None:
        if self.cache_dir is None:
            return
        try:
            with (self.cache_dir / f"{cache_key}.json").open("w") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning("Failed to save cache", source=self.source, cache_key=cache_key[:8], error=str(e))

    async def _wait_for_rate_limit(self) -> None:
        """Wait if the next request would exceed the rate limit.

        Spacing is applied only while the window is young (first half of the
        period), which stops startup bursts without slowing steady traffic.
        """
        async with self._rate_limit_lock:
            now = time.time()
            while self._request_times and self._request_times[0] < now - self.rate_limit_period:
                self._request_times.popleft()

            if len(self._request_times) >= self.rate_limit:
                wait_time = self._request_times[0] + self.rate_limit_period - now + 0.1
                if wait_time > 0:
                    logger.debug(
                        "Rate limit reached, waiting",
                        source=self.source,
                        wait_seconds=wait_time,
                        current_count=len(self._request_times),
                    )
                    await asyncio.sleep(wait_time)
                    now = time.time()
                    while (
                        self._request_times
                        and self._request_times[0] < now - self.rate_limit_period
                    ):
                        self._request_times.popleft()

            if self._request_times:
                time_since_last = now - self._request_times[-1]
                window_age = now - self._request_times[0]
                min_spacing = self.rate_limit_period / self.rate_limit
                if window_age < self.rate_limit_period * 0.5:
                    age_factor = window_age / (self.rate_limit_period * 0.5)
                    effective_spacing = min_spacing * (1.0 - age_factor * 0.8)
                    spacing_delay = effective_spacing - time_since_last
                    if spacing_delay > 0.01:
                        await asyncio.sleep(spacing_delay)
                        now = time.time()

            self._request_times.append(now)

    def _safe_params(self, params: dict[str, Any]) -> dict[str, Any]:
        return {k: ("***" if k in self.secret_params else v) for k, v in params.items()}

    def _url(self, endpoint: str) -> str:
        url = f"{self.base_url}/{endpoint.strip('/')}"
        return f"{url}/" if self.trailing_slash else url

    async def get_json(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        *,
        operation: str = "request",
        use_cache: bool = True,
    ) -> Any:
        """GET ``endpoint`` and decode the JSON body.

        Args:
            endpoint: Path relative to the API root (e.g. "volume/4050-796").
            params: Query parameters; ``default_params`` are added automatically.
            operation: Label for metrics ("search", "series", "issues", ...).
            use_cache: Whether cached responses may be used.

        Returns:
            Decoded JSON body.

        Raises:
            SourceConfigurationError: The source rejected our credentials.
            SourceRequestError: Network error, timeout or unexpected response.
        """
        request_params = {**self.default_params, **(params or {})}
        cache_key = self._get_cache_key(endpoint, request_params)
        if use_cache:
            cached = self._load_from_cache(cache_key)
            if cached is not None:
                source_requests_total.labels(source=self.source, operation=operation, outcome="cached").inc()
                return cached

        await self._wait_for_rate_limit()
        url = self._url(endpoint)
        logger.debug(
            "Calling metadata source",
            source=self.source,
            url=url,
            params=self._safe_params(request_params),
        )

        start = time.perf_counter()
        try:
            data = await self._request_with_retries(url, request_params, operation)
        finally:
            source_request_duration_seconds.labels(source=self.source, operation=operation).observe(
                time.perf_counter() - start
            )

        source_requests_total.labels(source=self.source, operation=operation, outcome="success").inc()
        if use_cache:
            self._save_to_cache(cache_key, data)
        return data

    async def _request_with_retries(self, url: str, params: dict[str, Any], operation: str) -> Any:
        for attempt in range(self.max_retries + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout,
                    auth=self.auth,
                    transport=self.transport,
                ) as client:
                    response = await client.get(
                        url,
                        params=params,
                        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                    )
                    response.raise_for_status()
                    return response.json()

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code in (401, 403):
                    source_requests_total.labels(source=self.source, operation=operation, outcome="error").inc()
                    raise SourceConfigurationError(
                        self.source,
                        f"{self.source} rejected the configured credentials (HTTP {status_code})",
                    ) from e
                if status_code in (420, 429) and attempt < self.max_retries:
                    source_requests_total.labels(
                        source=self.source, operation=operation, outcome="rate_limited"
                    ).inc()
                    base_wait = 2**attempt
                    wait_time = base_wait + random.uniform(0, base_wait * 0.5)
                    logger.warning(
                        "Rate limited by metadata source, retrying",
                        source=self.source,
                        status_code=status_code,
                        attempt=attempt + 1,
                        wait_seconds=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    await self._wait_for_rate_limit()
                    continue
                source_requests_total.labels(source=self.source, operation=operation, outcome="error").inc()
                raise SourceRequestError(
                    self.source,
                    f"{self.source} returned HTTP {status_code}",
                    status_code=status_code,
                ) from e

            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait_time = 2**attempt
                    logger.warning(
                        "Network error, retrying",
                        source=self.source,
                        error=str(e),
                        attempt=attempt + 1,
                        wait_seconds=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue
                source_requests_total.labels(source=self.source, operation=operation, outcome="error").inc()
                raise SourceRequestError(self.source, f"{self.source} request failed: {e}") from e

            except ValueError as e:
                source_requests_total.labels(source=self.source, operation=operation, outcome="error").inc()
                raise SourceRequestError(self.source, f"{self.source} returned invalid JSON") from e

        raise SourceRequestError(self.source, f"{self.source} request failed after retries")
