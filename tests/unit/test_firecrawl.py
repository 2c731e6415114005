import json

import httpx
import pytest

from chatforge.scrape import FirecrawlScraper, get_scraper
from chatforge.config import ScraperConfig


def _scraper_with(handler, **kwargs) -> FirecrawlScraper:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FirecrawlScraper(
        base_url="https://firecrawl.test/", api_key="fc-key", client=client, **kwargs
    )


@pytest.mark.asyncio
async def test_scrape_posts_url_and_formats():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"success": True, "data": {"markdown": "# Title\nbody"}}
        )

    scraper = _scraper_with(handler)
    response = await scraper.scrape("https://example.com/post", ["markdown"])

    assert response.success is True
    assert response.markdown == "# Title\nbody"
    assert seen["url"] == "https://firecrawl.test/v1/scrape"
    assert seen["auth"] == "Bearer fc-key"
    assert seen["body"] == {"url": "https://example.com/post", "formats": ["markdown"]}


@pytest.mark.asyncio
async def test_scrape_reports_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"success": False, "error": "Payment required"})

    response = await _scraper_with(handler).scrape("https://example.com", ["markdown"])

    assert response.success is False
    assert response.error == "HTTP 402: Payment required"


@pytest.mark.asyncio
async def test_scrape_reports_unsuccessful_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "blocked by robots"})

    response = await _scraper_with(handler).scrape("https://example.com", ["markdown"])

    assert response.success is False
    assert response.error == "blocked by robots"


@pytest.mark.asyncio
async def test_transport_errors_propagate():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(httpx.ConnectError):
        await _scraper_with(handler).scrape("https://example.com", ["markdown"])


def test_get_scraper_uses_env_api_key(monkeypatch):
    monkeypatch.setenv("FIRECRAWL_API_KEY", "from-env")
    scraper = get_scraper(ScraperConfig(base_url="https://fc.local"))

    assert isinstance(scraper, FirecrawlScraper)
    assert scraper.api_key == "from-env"
    assert scraper.endpoint == "https://fc.local/v1/scrape"


def test_get_scraper_rejects_unknown_provider():
    with pytest.raises(ValueError):
        get_scraper(ScraperConfig.model_construct(provider="other"))
