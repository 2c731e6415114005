"""Firecrawl scrape provider backed by ``httpx``."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from ..contracts import ScrapeResponse

logger = logging.getLogger(__name__)


class FirecrawlScraper:
    """Call the Firecrawl ``/v1/scrape`` endpoint for a single URL."""

    def __init__(
        self,
        base_url: str = "https://api.firecrawl.dev",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/v1/scrape"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def scrape(self, url: str, formats: Sequence[str]) -> ScrapeResponse:
        payload = {"url": url, "formats": list(formats)}
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.endpoint, json=payload, headers=self._headers()
                )
            else:
                async with httpx.AsyncClient(
                    timeout=self.timeout, follow_redirects=True
                ) as client:
                    response = await client.post(
                        self.endpoint, json=payload, headers=self._headers()
                    )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            return ScrapeResponse(
                success=False,
                error=f"HTTP {e.response.status_code}: {_error_detail(e.response)}",
            )
        return self._parse(data)

    @staticmethod
    def _parse(data: Any) -> ScrapeResponse:
        if not isinstance(data, dict):
            return ScrapeResponse(success=False, error="unexpected response body")
        if not data.get("success", False):
            return ScrapeResponse(
                success=False, error=str(data.get("error") or "scrape unsuccessful")
            )
        body = data.get("data") or {}
        markdown = body.get("markdown") if isinstance(body, dict) else None
        return ScrapeResponse(success=True, markdown=markdown)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.reason_phrase
