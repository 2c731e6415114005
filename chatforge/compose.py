"""Prompt composition from scraped context and the user's request."""

from __future__ import annotations

from typing import Iterable

from .contracts import ScrapeResult

CONTEXT_SEPARATOR = "\n\n"


def join_context(results: Iterable[ScrapeResult]) -> str:
    """Join the content of successful scrapes with a blank line between them."""
    return CONTEXT_SEPARATOR.join(
        result.content for result in results if result.ok and result.content
    )


def compose_prompt(original_text: str, results: Iterable[ScrapeResult]) -> str:
    """Build the generation prompt.

    Without any scraped context the original text is returned unchanged,
    otherwise the context block is followed by the question.
    """
    context = join_context(results)
    if not context:
        return original_text
    return f"Context:\n{context}\n\nQuestion: {original_text}"
