from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from time import perf_counter
from typing import Awaitable, Callable

import httpx

from ..config import settings
from ..errors import TLESourceError
from .catalog_store import CatalogStore, IngestSummary
from .tle_validator import TLE, parse_tle_text

logger = logging.getLogger(__name__)


class IngestService:
    """Fetches a multi-TLE file and applies it to the catalog in one batch.

    A fetch is all-or-nothing: if any element set in the payload is malformed
    the whole payload is rejected and the catalog is left untouched.
    """

    RETRYABLE_HTTP_STATUSES = {403, 429, 500, 502, 503, 504}
    INITIAL_RETRY_DELAY_SECONDS = 0.5

    def __init__(
        self,
        store: CatalogStore,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self._client = client
        self.timeout_seconds = timeout_seconds or settings.tle_fetch_timeout_seconds
        self.max_retries = max_retries or settings.tle_fetch_max_retries
        self._sleep = sleep

    async def ingest_latest_tles(self, url: str | None = None) -> IngestSummary:
        started = perf_counter()
        text = await self._download_tle_text(url)
        records = parse_tle_text(text)
        summary = self.store.ingest_batch(records)
        logger.info(
            "TLE ingest complete: records=%d inserted=%d superseded=%d unchanged=%d elapsed_ms=%.1f",
            len(records), summary.inserted, summary.superseded, summary.unchanged,
            (perf_counter() - started) * 1000.0,
        )
        return summary

    def ingest_file(self, path: str | Path) -> IngestSummary:
        text = Path(path).read_text(encoding="utf-8")
        records = parse_tle_text(text)
        summary = self.store.ingest_batch(records)
        logger.info(
            "TLE file ingested: path=%s records=%d inserted=%d superseded=%d",
            path, len(records), summary.inserted, summary.superseded,
        )
        return summary

    def ingest_text(self, text: str) -> IngestSummary:
        return self.store.ingest_batch(parse_tle_text(text))

    async def _download_tle_text(self, url: str | None = None) -> str:
        last_error: TLESourceError | None = None
        for source_url in self._bulk_tle_source_urls(url):
            try:
                text = await self._fetch_text_with_retries(source_url)
                if text.strip():
                    logger.info("Fetched TLE catalog from %s", source_url)
                    return text
            except TLESourceError as exc:
                last_error = exc
                logger.warning("TLE fetch failed for %s: %s", source_url, exc)
                continue

        if last_error is not None:
            raise last_error
        raise TLESourceError("TLE source returned an empty payload")

    @staticmethod
    def parse(text: str) -> list[TLE]:
        return parse_tle_text(text)

    @staticmethod
    def _http_headers() -> dict[str, str]:
        return {
            "User-Agent": "OrbitWatch/1.0",
            "Accept": "text/plain, */*;q=0.9",
        }

    @staticmethod
    def _dedupe_urls(urls: list[str]) -> list[str]:
        seen: set[str] = set()
        deduped: list[str] = []
        for url in urls:
            key = url.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            deduped.append(key)
        return deduped

    def _bulk_tle_source_urls(self, url: str | None = None) -> list[str]:
        primary = url or settings.tle_source_url
        primary_lower = primary.lower()
        celestrak_fallbacks = [
            "https://celestrak.org/NORAD/elements/gp.php?GROUP=active&FORMAT=tle",
            "https://celestrak.org/NORAD/elements/active.txt",
        ]
        if url is None and ("celestrak.org" in primary_lower or "celestrak.com" in primary_lower):
            return self._dedupe_urls([primary, *celestrak_fallbacks])
        return [primary]

    async def _fetch_text_with_retries(self, url: str) -> str:
        if self._client is not None:
            return await self._fetch_with_client(self._client, url)
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            headers=self._http_headers(),
            follow_redirects=True,
        ) as client:
            return await self._fetch_with_client(client, url)

    async def _fetch_with_client(self, client: httpx.AsyncClient, url: str) -> str:
        retry_delay_seconds = self.INITIAL_RETRY_DELAY_SECONDS
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code if exc.response is not None else None
                if status in self.RETRYABLE_HTTP_STATUSES and attempt < self.max_retries:
                    await self._sleep(retry_delay_seconds)
                    retry_delay_seconds *= 2
                    continue
                raise TLESourceError(f"TLE source responded with HTTP {status}", status_code=status) from exc
            except httpx.RequestError as exc:
                if attempt < self.max_retries:
                    await self._sleep(retry_delay_seconds)
                    retry_delay_seconds *= 2
                    continue
                raise TLESourceError(f"TLE source request failed: {exc}") from exc
        raise TLESourceError("TLE source retries exhausted")
