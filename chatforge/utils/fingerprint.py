"""Deterministic fingerprints for step inputs."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def compute_fingerprint(step_name: str, step_input: Any) -> str:
    """Return a sha256 hex digest of ``step_name`` and its JSON-able input.

    Keys are sorted so that dict ordering never changes the digest.
    """
    canonical = json.dumps(
        {"step": step_name, "input": step_input},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
