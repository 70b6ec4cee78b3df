"""
State behind every paginated table of the console.

The controller owns page, limit, sort, order, search and filters. Structural
changes (sort, filters, limit) go back to page 1 and query at once; search text
waits for a quiet period so a burst of keystrokes produces one request. Each
request carries an increasing id and only the newest one may update the rows.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from .api import ApiError

logger = logging.getLogger(__name__)

Fetcher = Callable[[dict], Awaitable[dict]]

SEARCH_DEBOUNCE_SECONDS = 0.5


class DataGridController:
    def __init__(
        self,
        fetch: Fetcher,
        limit: int = 10,
        sort: Optional[str] = None,
        order: str = "asc",
        filters: Optional[dict[str, Any]] = None,
        debounce: float = SEARCH_DEBOUNCE_SECONDS,
    ):
        self.fetch = fetch
        self.page = 1
        self.limit = limit
        self.sort = sort
        self.order = order
        self.search = ""
        self.filters: dict[str, Any] = dict(filters or {})
        self.debounce = debounce

        self.rows: list[dict] = []
        self.total = 0
        self.total_pages = 0
        self.loading = False
        self.error: Optional[Exception] = None

        self._issued = 0
        self._pending: Optional[asyncio.Task] = None

    @property
    def latest_request_id(self) -> int:
        return self._issued

    def params(self) -> dict:
        params = {"page": self.page, "limit": self.limit, "order": self.order, **self.filters}
        if self.sort:
            params["sort"] = self.sort
        if self.search:
            params["search"] = self.search
        return params

    async def refresh(self) -> None:
        self._issued += 1
        request_id = self._issued
        self.loading = True
        try:
            payload = await self.fetch(self.params())
        except (ApiError, httpx.HTTPError) as exc:
            if request_id != self._issued:
                return
            logger.warning("grid request %d failed: %s", request_id, exc)
            self.error = exc
            self.loading = False
            return
        if request_id != self._issued:
            logger.debug("discarding stale grid response %d (latest %d)", request_id, self._issued)
            return
        self.rows = list(payload.get("data", []))
        self.total = int(payload.get("total", 0))
        self.total_pages = int(payload.get("totalPages", 0))
        self.error = None
        self.loading = False

    async def set_page(self, page: int) -> None:
        self.page = max(1, page)
        await self.refresh()

    async def set_limit(self, limit: int) -> None:
        self.limit = limit
        self.page = 1
        await self.refresh()

    async def set_sort(self, field: str, order: Optional[str] = None) -> None:
        """Sort by `field`; clicking the current field again flips the order."""
        if order is None:
            order = "desc" if field == self.sort and self.order == "asc" else "asc"
        self.sort = field
        self.order = order
        self.page = 1
        await self.refresh()

    async def set_filter(self, name: str, value: Any) -> None:
        if value is None or value == "" or value == []:
            self.filters.pop(name, None)
        else:
            self.filters[name] = value
        self.page = 1
        await self.refresh()

    async def clear_filters(self) -> None:
        self.filters.clear()
        self.page = 1
        await self.refresh()

    def set_search(self, text: str) -> None:
        self.search = text.strip()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.create_task(self._search_after_quiet_period())

    async def _search_after_quiet_period(self) -> None:
        await asyncio.sleep(self.debounce)
        self.page = 1
        await self.refresh()

    async def flush(self) -> None:
        """Wait for a scheduled search request, if any."""
        if self._pending is None:
            return
        try:
            await self._pending
        except asyncio.CancelledError:
            pass

    def close(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
