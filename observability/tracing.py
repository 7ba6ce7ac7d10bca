"""Simple span helper for recording per-stage timings of a turn."""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator


@contextmanager
def span(trace, name: str) -> Iterator[None]:
    """Append ``{"span": name, "ms": ...}`` to ``trace.events`` (or to ``trace`` itself when it is a list)."""

    events = trace if isinstance(trace, list) else trace.events
    start = time.time()
    try:
        yield
    finally:
        elapsed_ms = int((time.time() - start) * 1000)
        events.append({"span": name, "ms": elapsed_ms})


__all__ = ["span"]
