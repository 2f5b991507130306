# events.py
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .model import Coordinate, RunState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    """
    One state change of one job instance.

    Emitted by the coordinator in transition order; this is the stable
    contract consumed by logging, the console and tests.
    """
    job: str
    instance: str
    coordinate: Coordinate
    old: RunState
    new: RunState
    timestamp: datetime
    reason: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["coordinate"] = dict(self.coordinate)
        data["old"] = self.old.value
        data["new"] = self.new.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


EventSink = Callable[[TransitionEvent], None]


class EventRecorder:
    """Sink that keeps every event in memory (used by tests and reports)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[TransitionEvent] = []

    def __call__(self, event: TransitionEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_instance(self, key: str) -> List[TransitionEvent]:
        with self._lock:
            return [e for e in self.events if e.instance == key]

    def path(self, key: str) -> List[RunState]:
        """States an instance went through, starting with PENDING."""
        events = self.for_instance(key)
        if not events:
            return []
        return [events[0].old] + [e.new for e in events]


class LoggingSink:
    """Sink that writes every transition to a stdlib logger."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.log = log or logger
        self.level = level

    def __call__(self, event: TransitionEvent) -> None:
        suffix = f" ({event.reason})" if event.reason else ""
        self.log.log(
            self.level,
            "%s: %s -> %s%s",
            event.instance,
            event.old.value,
            event.new.value,
            suffix,
        )
