"""
Event sinks for access telemetry.
Publishing is best-effort: a failing sink logs and never raises.
"""

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

Event = Dict[str, Any]


class EventSink:
    """Base sink; subclasses implement _publish."""

    def publish(self, event: Event):
        try:
            self._publish(event)
        except Exception as e:
            logger.error("Failed to publish event %s: %s", event.get("type"), e)

    def _publish(self, event: Event):
        raise NotImplementedError


class LogEventSink(EventSink):
    """Writes every event as JSON to the log."""

    def __init__(self, name: str = "nfclock.events"):
        self._logger = logging.getLogger(name)

    def _publish(self, event: Event):
        self._logger.info(json.dumps(event, default=str))


class MemoryEventSink(EventSink):
    """Keeps published events in a list."""

    def __init__(self):
        self.events: List[Event] = []

    def _publish(self, event: Event):
        self.events.append(dict(event))
