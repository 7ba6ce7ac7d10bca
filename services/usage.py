"""Usage reporting sinks for LLM token telemetry."""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol

from agents.types import Usage, UsageEvent

logger = logging.getLogger(__name__)


class UsageReporter(Protocol):
    def report(self, event: UsageEvent) -> None: ...


class NullUsageReporter:
    def report(self, event: UsageEvent) -> None:
        return None


class CollectingUsageReporter:
    """Keeps every event of a turn so the pipeline can hand them to billing."""

    def __init__(self) -> None:
        self.events: List[UsageEvent] = []

    def report(self, event: UsageEvent) -> None:
        self.events.append(event)

    def total_tokens(self) -> int:
        return sum((event.usage.total_tokens or 0) for event in self.events if event.usage)


class BestEffortUsageReporter:
    """Forwards events to a sink; sink failures are logged, never raised."""

    def __init__(self, sink: Callable[[UsageEvent], None]) -> None:
        self._sink = sink

    def report(self, event: UsageEvent) -> None:
        try:
            self._sink(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning("usage sink failed source=%s: %s", event.source, exc)


def report_usage(
    reporter: Optional[UsageReporter],
    *,
    source: str,
    model: Optional[str],
    usage: Optional[Usage],
) -> None:
    """Emit one usage event without ever failing the calling turn."""

    if reporter is None:
        return
    try:
        reporter.report(UsageEvent(source=source, model=model, usage=usage))
    except Exception as exc:  # noqa: BLE001
        logger.warning("usage reporting failed source=%s: %s", source, exc)


__all__ = [
    "BestEffortUsageReporter",
    "CollectingUsageReporter",
    "NullUsageReporter",
    "UsageReporter",
    "report_usage",
]
