"""Observability sinks receiving one event per finished API call.

Sinks are fire-and-forget: they must return quickly and must not raise.
The client still guards every emit, so a broken sink only costs a log line.
"""

import logging
import queue
from typing import Callable, Iterable, List, Optional

from apilayer.core.logging import get_log_context, get_logger
from apilayer.models import CallEvent, OutcomeKind

logger = get_logger(__name__)

EventSink = Callable[[CallEvent], None]


class LoggingEventSink:
    """Write each call event as one structured log line."""

    def __init__(self, event_logger: Optional[logging.Logger] = None):
        self._logger = event_logger or get_logger("apilayer.calls")

    def __call__(self, event: CallEvent) -> None:
        level = logging.INFO if event.outcome == OutcomeKind.SUCCESS else logging.WARNING
        self._logger.log(
            level,
            f"{event.method} {event.path} -> {event.outcome.value} "
            f"after {event.attempts} attempt(s)",
            extra=get_log_context(**event.as_log_context()),
        )


class QueueEventSink:
    """Buffer events in a bounded queue for a consumer to drain.

    If the queue is full the event is dropped so callers never block.

    Attributes:
        dropped: Number of events dropped because the queue was full
    """

    def __init__(self, max_queue_size: int = 10000):
        self.events: queue.Queue[CallEvent] = queue.Queue(maxsize=max_queue_size)
        self.dropped = 0

    def __call__(self, event: CallEvent) -> None:
        try:
            self.events.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def drain(self, max_items: Optional[int] = None) -> List[CallEvent]:
        """Take up to ``max_items`` buffered events (all of them by default)."""
        drained: List[CallEvent] = []
        while max_items is None or len(drained) < max_items:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                break
        return drained


class CompositeEventSink:
    """Fan events out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def __call__(self, event: CallEvent) -> None:
        for sink in self.sinks:
            try:
                sink(event)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed: {e}")
