"""URL extraction from free-form chat text."""

from __future__ import annotations

import re
from typing import List

URL_PATTERN = re.compile(r"https?://\S+")


def extract_urls(text: str) -> List[str]:
    """Return every ``http://``/``https://`` URL in ``text``, in order.

    A URL runs until the next whitespace character. Duplicates are kept;
    an empty or URL-free text yields an empty list.
    """
    if not text:
        return []
    return URL_PATTERN.findall(text)
