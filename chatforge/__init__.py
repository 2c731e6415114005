"""chatforge: durable AI reply generation for chat messages."""

from .compose import compose_prompt
from .contracts import GeneratedText, MessageQueued, ScrapeResult
from .dispatch import MessageDispatcher
from .extract import extract_urls
from .generation import GenerationInvoker, PydanticAIModel
from .orchestrator import WorkflowOrchestrator, create_orchestrator
from .persistence import get_repository
from .scrape import FirecrawlScraper, ScrapeFanout
from .transports import get_transport
from .worker import GenerationWorker

__version__ = "0.1.0"
__all__ = [
    "FirecrawlScraper",
    "GeneratedText",
    "GenerationInvoker",
    "GenerationWorker",
    "MessageDispatcher",
    "MessageQueued",
    "PydanticAIModel",
    "ScrapeFanout",
    "ScrapeResult",
    "WorkflowOrchestrator",
    "compose_prompt",
    "create_orchestrator",
    "extract_urls",
    "get_repository",
    "get_transport",
]
