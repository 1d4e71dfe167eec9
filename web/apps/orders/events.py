"""Lifecycle event publishing.

Events are written as structured records to the ``orders.events`` logger,
which ``LOGGING`` routes through the JSON formatter; log shippers forward
them to whatever consumes order events (notifications, analytics).
Publishing is fire-and-forget and never part of the status transaction.
"""

import logging
from datetime import datetime, timezone

from .domain import EventPublisher

events_logger = logging.getLogger("orders.events")


class LoggingEventPublisher(EventPublisher):
    """Publish each event as one JSON log line."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or events_logger

    def publish(self, name: str, **fields) -> None:
        payload = {k: (str(v) if v is not None and not isinstance(v, (int, float, bool, str)) else v) for k, v in fields.items()}
        payload["event"] = name
        payload["occurred_at"] = datetime.now(timezone.utc).isoformat()
        self.logger.info(name, extra=payload)


class RecordingEventPublisher(EventPublisher):
    """Keeps published events in a list; used by tests and the shell."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, name: str, **fields) -> None:
        self.events.append((name, fields))

    def names(self) -> list[str]:
        return [n for n, _ in self.events]
