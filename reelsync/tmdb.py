import asyncio
from collections import deque
import os
import time

import httpx

from .config import (
    TMDB_RATE_LIMIT_ENABLED,
    TMDB_RATE_LIMIT_REQUESTS,
    TMDB_RATE_LIMIT_WINDOW_SECONDS,
)
from .import_types import CatalogUnavailableError

BASE_URL = "https://api.themoviedb.org/3"
_client: httpx.AsyncClient | None = None


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` acquisitions in any ``window_seconds`` span."""

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max(1, max_requests)
        self.window_seconds = max(0.0, window_seconds)
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def wait_time(self, now: float | None = None) -> float:
        now = time.monotonic() if now is None else now
        self._prune(now)
        if len(self._timestamps) < self.max_requests:
            return 0.0
        return max(0.0, self._timestamps[0] + self.window_seconds - now)

    async def acquire(self) -> None:
        async with self._lock:
            delay = self.wait_time()
            while delay > 0:
                await asyncio.sleep(delay)
                delay = self.wait_time()
            self._timestamps.append(time.monotonic())

    def reset(self) -> None:
        self._timestamps.clear()


rate_limiter = SlidingWindowRateLimiter(TMDB_RATE_LIMIT_REQUESTS, TMDB_RATE_LIMIT_WINDOW_SECONDS)


def _get_api_key() -> str:
    key = os.environ.get("TMDB_API_KEY", "")
    if not key:
        raise CatalogUnavailableError("TMDB_API_KEY environment variable not set.")
    return key


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=10)
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


async def _get(path: str, params: dict | None = None) -> dict:
    params = {key: value for key, value in (params or {}).items() if value is not None}
    params["api_key"] = _get_api_key()
    if TMDB_RATE_LIMIT_ENABLED:
        await rate_limiter.acquire()
    client = await _get_client()
    resp = await client.get(f"{BASE_URL}{path}", params=params)
    resp.raise_for_status()
    return resp.json()


async def search_movie(query: str, page: int = 1, year: int | None = None) -> dict:
    return await _get(
        "/search/movie",
        {"query": query, "page": page, "year": year, "include_adult": "false"},
    )


async def search_tv(query: str, page: int = 1, year: int | None = None) -> dict:
    return await _get(
        "/search/tv",
        {"query": query, "page": page, "first_air_date_year": year, "include_adult": "false"},
    )


async def find_by_imdb_id(imdb_id: str) -> dict:
    return await _get(f"/find/{imdb_id}", {"external_source": "imdb_id"})
