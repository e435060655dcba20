"""In-process event stream for presentation layers.

Channels:
  phase_event        transitions, iteration bumps
  coordinator_event  completion handling, human pauses
  retry_event        retry attempts and outcomes
  recovery_event     interrupted-run scans
  verdict_event      gate verdict processing
  lifecycle_event    worker start/stop

Every event carries a ``type`` tag and the ``run_id`` it concerns.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

PHASE_EVENT = "phase_event"
COORDINATOR_EVENT = "coordinator_event"
RETRY_EVENT = "retry_event"
RECOVERY_EVENT = "recovery_event"
VERDICT_EVENT = "verdict_event"
LIFECYCLE_EVENT = "lifecycle_event"

ALL_CHANNELS = "*"


@dataclass
class Event:
    channel: str
    type: str
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


Handler = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe. A failing handler never breaks emit()."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, channel: str, handler: Handler) -> None:
        """Register a handler for a channel, or for every channel with "*"."""
        self._handlers[channel].append(handler)

    def unsubscribe(self, channel: str, handler: Handler) -> None:
        if handler in self._handlers.get(channel, []):
            self._handlers[channel].remove(handler)

    def emit(self, channel: str, type: str, run_id: str, **data: Any) -> Event:
        event = Event(channel=channel, type=type, run_id=run_id, data=data)
        logger.debug("%s %s [%s] %s", channel, type, run_id, data or "")
        for handler in [*self._handlers.get(channel, []), *self._handlers.get(ALL_CHANNELS, [])]:
            try:
                handler(event)
            except Exception as e:
                logger.warning("Event handler failed for %s/%s: %s", channel, type, e)
        return event


class EventLog:
    """Appends every event on a bus to a JSONL file (one per run)."""

    def __init__(self, bus: EventBus, path: str | Path) -> None:
        self.path = Path(path)
        bus.subscribe(ALL_CHANNELS, self.append)

    def append(self, event: Event) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(asdict(event), default=str) + "\n")

    def read(self, limit: int = 0) -> list[dict]:
        """Return logged events, oldest first. limit > 0 keeps only the last N."""
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed event line in %s", self.path)
        return entries[-limit:] if limit > 0 else entries
