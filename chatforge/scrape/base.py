"""Scrape provider interface and the bounded concurrent fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Protocol, Sequence

from ..constants import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_SCRAPE_FORMATS,
    DEFAULT_SCRAPE_TIMEOUT,
)
from ..contracts import ScrapeResponse, ScrapeResult

logger = logging.getLogger(__name__)


class Scraper(Protocol):
    """Provider that turns one URL into page content."""

    async def scrape(self, url: str, formats: Sequence[str]) -> ScrapeResponse:
        """Fetch ``url`` and return its content in the first requested format."""


def all_failed(results: Sequence[ScrapeResult]) -> bool:
    """Return ``True`` when there was at least one URL and none succeeded."""
    return bool(results) and not any(result.ok for result in results)


class ScrapeFanout:
    """Scrape many URLs concurrently with per-URL failure isolation.

    Every URL gets its own timeout; a failure or timeout only affects that
    URL's :class:`ScrapeResult`. Results come back in input order no matter
    which fetch finishes first.
    """

    def __init__(
        self,
        scraper: Scraper,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        timeout: float = DEFAULT_SCRAPE_TIMEOUT,
        formats: Optional[Iterable[str]] = None,
        dedupe: bool = True,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._scraper = scraper
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.formats = list(formats or DEFAULT_SCRAPE_FORMATS)
        self.dedupe = dedupe

    async def scrape_all(self, urls: Sequence[str]) -> List[ScrapeResult]:
        targets = list(dict.fromkeys(urls)) if self.dedupe else list(urls)
        if not targets:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(url: str) -> ScrapeResult:
            async with semaphore:
                return await self._scrape_one(url)

        # gather keeps input order and cancels every fetch if we are cancelled
        results = await asyncio.gather(*(_bounded(url) for url in targets))
        failed = sum(1 for r in results if not r.ok)
        logger.info(
            f"Scraped {len(results)} url(s): {len(results) - failed} ok, {failed} failed"
        )
        return list(results)

    async def _scrape_one(self, url: str) -> ScrapeResult:
        try:
            response = await asyncio.wait_for(
                self._scraper.scrape(url, self.formats), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Scrape timed out after {self.timeout}s for {url}")
            return ScrapeResult(
                url=url, ok=False, error=f"timed out after {self.timeout}s"
            )
        except Exception as e:
            logger.warning(f"Scrape error for {url}: {e}")
            return ScrapeResult(url=url, ok=False, error=str(e) or type(e).__name__)

        if not response.success:
            logger.warning(f"Scrape provider error for {url}: {response.error}")
            return ScrapeResult(
                url=url, ok=False, error=response.error or "scrape unsuccessful"
            )
        if not response.markdown:
            return ScrapeResult(url=url, ok=False, error="empty content")
        return ScrapeResult(url=url, ok=True, content=response.markdown)
