import asyncio
from typing import Dict, List, Optional, Sequence

import pytest

from chatforge.config import RetryConfig
from chatforge.contracts import ModelResponse, ScrapeResponse
from chatforge.generation import GenerationInvoker
from chatforge.orchestrator import WorkflowOrchestrator
from chatforge.persistence import InMemoryWorkflowRepository
from chatforge.scrape import ScrapeFanout


class FakeScraper:
    """Scrape provider returning canned pages; records every call."""

    def __init__(self) -> None:
        self.pages: Dict[str, str] = {}
        self.failures: Dict[str, str] = {}
        self.raises: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[str] = []
        self.completed: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def scrape(self, url: str, formats: Sequence[str]) -> ScrapeResponse:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(url, 0))
            if url in self.raises:
                raise self.raises[url]
            if url in self.failures:
                return ScrapeResponse(success=False, error=self.failures[url])
            self.completed.append(url)
            return ScrapeResponse(
                success=True, markdown=self.pages.get(url, f"content of {url}")
            )
        finally:
            self.in_flight -= 1


class FakeLanguageModel:
    """Language model that fails with queued errors before answering."""

    def __init__(self, text: str = "generated reply") -> None:
        self.text = text
        self.errors: List[Exception] = []
        self.prompts: List[str] = []
        self.delay: float = 0
        self.started: Optional[asyncio.Event] = None

    async def generate(self, model: str, prompt: str) -> ModelResponse:
        self.prompts.append(prompt)
        if self.started is not None:
            self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return ModelResponse(text=self.text, usage={"input_tokens": 3, "output_tokens": 2})


@pytest.fixture
def scraper() -> FakeScraper:
    return FakeScraper()


@pytest.fixture
def language_model() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay=0, max_delay=0)


@pytest.fixture
def make_orchestrator(repository, scraper, language_model, fast_retry):
    def _make(**overrides) -> WorkflowOrchestrator:
        fanout = ScrapeFanout(
            overrides.pop("scraper", scraper),
            max_concurrency=overrides.pop("max_concurrency", 8),
            timeout=overrides.pop("timeout", 5.0),
        )
        invoker = GenerationInvoker(
            overrides.pop("language_model", language_model), model_id="test-model"
        )
        return WorkflowOrchestrator(
            overrides.pop("repository", repository),
            fanout,
            invoker,
            retry_policy=overrides.pop("retry_policy", fast_retry),
            **overrides,
        )

    return _make
