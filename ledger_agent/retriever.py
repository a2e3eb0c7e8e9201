"""Paginated cache-through retrieval over an external HTTP API.

Every data tool is a ``PaginatedRetriever``: it authenticates through an
injected connection, answers from the page cache when it can, and otherwise
walks the API page by page until a short page (or the page bound) ends the
result set.

Usage::

    class InvoiceCount(PaginatedRetriever):
        def cache_key(self) -> str: ...
        def build_request(self, start_position, page_size): ...
        def count_items(self, payload): ...

    pages = await InvoiceCount(connection, cache=LRUPageCache()).retrieve()
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx

from ledger_agent.cache import AsyncCachePolicy, CachePolicy, Pages
from ledger_agent.errors import CredentialError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 50
DEFAULT_START_POSITION = 1
DEFAULT_TIMEOUT = 30.0


@asynccontextmanager
async def open_client(
    client: httpx.AsyncClient | None, timeout: float
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the shared client, or a short-lived one when none is given."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        yield owned


class HTTPConnection(Protocol):
    """Credential-bearing handle to one account on the external API."""

    @property
    def base_url(self) -> str: ...

    @property
    def scope_id(self) -> str: ...

    async def authenticate(self) -> str | None:
        """Return a usable access token, or None when credentials are unusable."""
        ...

    def headers(self) -> dict[str, str]: ...


@dataclass
class PageRequest:
    """One outbound API call."""

    path: str
    params: dict[str, Any] = field(default_factory=dict)
    method: str = "GET"


class PaginatedRetriever(ABC):
    """Base class for tools that read paged results from an external API.

    Args:
        connection: Authenticated connection to the external API.
        cache: Sync or async page cache. ``None`` disables caching.
        page_size: Items requested per page.
        max_pages: Upper bound on calls per retrieval. A result set whose
            size is an exact multiple of ``page_size`` ends on an empty page,
            and an API that never returns a short page stops here.
        caller_id: Correlation id recorded in the API call log.
        client: Shared ``httpx.AsyncClient``. One is opened per retrieval
            when not given.
    """

    single_page = False

    def __init__(
        self,
        connection: HTTPConnection,
        *,
        cache: CachePolicy | AsyncCachePolicy | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        start_position: int = DEFAULT_START_POSITION,
        timeout: float = DEFAULT_TIMEOUT,
        caller_id: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        if max_pages < 1:
            raise ValueError(f"max_pages must be >= 1, got {max_pages}")
        self.connection = connection
        self.cache = cache
        self.page_size = page_size
        self.max_pages = 1 if self.single_page else max_pages
        self.start_position = start_position
        self.timeout = timeout
        self.caller_id = caller_id
        self._client = client
        self.api_calls = 0

    # -- Subclass hooks ---------------------------------------------------

    @abstractmethod
    def cache_key(self) -> str:
        """Deterministic key for the effective query."""

    @abstractmethod
    def build_request(self, start_position: int, page_size: int) -> PageRequest:
        """Request for the page starting at ``start_position``."""

    @abstractmethod
    def count_items(self, payload: dict[str, Any]) -> int:
        """Number of items the API returned in one page."""

    # -- Retrieval --------------------------------------------------------

    async def retrieve(self) -> Pages:
        """Return every page for the query, from cache when possible."""
        token = await self.connection.authenticate()
        if not token:
            raise CredentialError(
                f"Invalid or expired credentials for account {self.connection.scope_id}"
            )

        key = self.cache_key()
        cached = await self._cache_get(key)
        if cached is not None:
            logger.info("Cache hit %s (caller=%s, %d pages)", key, self.caller_id, len(cached))
            return cached

        pages: Pages = []
        start = self.start_position
        async with open_client(self._client, self.timeout) as client:
            for _ in range(self.max_pages):
                payload, count = await self._call_api(client, start, key)
                pages.append(payload)
                if count < self.page_size:
                    break
                start += self.page_size
            else:
                if not self.single_page:
                    logger.warning(
                        "Stopped %s after %d pages without a short page (caller=%s)",
                        key, self.max_pages, self.caller_id,
                    )

        await self._cache_set(key, pages)
        return pages

    async def _call_api(
        self, client: httpx.AsyncClient, start_position: int, key: str
    ) -> tuple[dict[str, Any], int]:
        request = self.build_request(start_position, self.page_size)
        url = f"{self.connection.base_url}/{request.path.lstrip('/')}"
        logger.info(
            "API call %s %s params=%s start=%d page_size=%d caller=%s cache_key=%s",
            request.method, url, request.params, start_position, self.page_size,
            self.caller_id, key,
        )
        self.api_calls += 1
        try:
            response = await client.request(
                request.method,
                url,
                params=request.params,
                headers=self.connection.headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{request.method} {url} failed ({e.response.status_code}): {e.response.text[:500]}",
                status_code=e.response.status_code,
                original=e,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{request.method} {url} failed: {e}", original=e) from e
        except ValueError as e:
            raise TransportError(f"{request.method} {url} returned invalid JSON", original=e) from e

        if not isinstance(payload, dict):
            raise TransportError(f"{request.method} {url} returned {type(payload).__name__}, expected object")
        return payload, self.count_items(payload)

    # -- Cache (best-effort) ---------------------------------------------

    async def _cache_get(self, key: str) -> Pages | None:
        if self.cache is None:
            return None
        try:
            value = self.cache.get(key)
            if inspect.isawaitable(value):
                value = await value
            return value
        except Exception:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            return None

    async def _cache_set(self, key: str, pages: Pages) -> None:
        if self.cache is None:
            return
        try:
            outcome = self.cache.set(key, pages)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.warning("Cache write failed for %s", key, exc_info=True)
