"""Side-channel metric events. A sink can never fail a core operation."""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def emit(self, name: str, value: float = 1.0, **tags: str) -> None: ...


class LoggingMetrics:
    """Default sink: writes each event to the debug log."""

    def emit(self, name: str, value: float = 1.0, **tags: str) -> None:
        logger.debug(f"metric {name}={value} {tags}")


class RecordingMetrics:
    """Keeps events in memory, for inspection."""

    def __init__(self) -> None:
        self.events: list[tuple[str, float, dict[str, str]]] = []

    def emit(self, name: str, value: float = 1.0, **tags: str) -> None:
        self.events.append((name, value, tags))

    def count(self, name: str) -> int:
        return sum(1 for event in self.events if event[0] == name)


def emit_safely(sink: MetricsSink | None, name: str, value: float = 1.0, **tags: str) -> None:
    """Emit to sink, logging and dropping any failure."""
    if sink is None:
        return
    try:
        sink.emit(name, value, **tags)
    except Exception as e:
        logger.warning(f"Metrics sink failed for {name}: {e}")
