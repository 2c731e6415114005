"""Scrape providers and the concurrent scrape fan-out."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ChatforgeConfig, ScraperConfig, load_config
from .base import ScrapeFanout, Scraper, all_failed
from .firecrawl import FirecrawlScraper


def get_scraper(config: Optional[ScraperConfig] = None) -> Scraper:
    """Factory function to build the configured scrape provider."""

    config = config or load_config().scraper
    if config.provider == "firecrawl":
        return FirecrawlScraper(
            base_url=config.base_url,
            api_key=config.api_key or os.getenv("FIRECRAWL_API_KEY"),
            timeout=config.timeout,
        )
    raise ValueError(f"Unsupported scrape provider: {config.provider}")


def get_fanout(
    scraper: Optional[Scraper] = None, config: Optional[ChatforgeConfig] = None
) -> ScrapeFanout:
    """Build a :class:`ScrapeFanout` from configuration."""

    scraper_config = (config or load_config()).scraper
    return ScrapeFanout(
        scraper or get_scraper(scraper_config),
        max_concurrency=scraper_config.max_concurrency,
        timeout=scraper_config.timeout,
        formats=scraper_config.formats,
        dedupe=scraper_config.dedupe,
    )


__all__ = [
    "FirecrawlScraper",
    "ScrapeFanout",
    "Scraper",
    "all_failed",
    "get_fanout",
    "get_scraper",
]
