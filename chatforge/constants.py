"""Shared constants for chatforge workflows."""

STEP_EXTRACT_URLS = "extract-urls"
STEP_SCRAPE_URLS = "scrape-urls"
STEP_GENERATE_TEXT = "generate-text"

# Pipeline order; the orchestrator walks these strictly in sequence.
STEP_ORDER = (STEP_EXTRACT_URLS, STEP_SCRAPE_URLS, STEP_GENERATE_TEXT)

MESSAGE_TOPIC = "chat.messages"

DEFAULT_MODEL = "google-gla:gemini-2.5-flash"
DEFAULT_SCRAPE_FORMATS = ("markdown",)
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_SCRAPE_TIMEOUT = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_VISIBILITY_TIMEOUT = 300.0
