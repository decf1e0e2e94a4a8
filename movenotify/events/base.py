"""Common interface for the two ways upstream changes are captured."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from movenotify.utils.timestamps import utc_now


class EventSource(ABC):
    """Produces change notifications from upstream entities.

    Exactly one implementation is active per process; it is chosen once
    at startup and never swapped while running.
    """

    mode: str = ""

    def __init__(self):
        self._stats_lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "events_received": 0,
            "events_dispatched": 0,
            "events_failed": 0,
            "notifications_created": 0,
        }
        self.started_at: Optional[datetime] = None
        self.last_event_at: Optional[datetime] = None

    @abstractmethod
    def start(self, scheduler: Any = None) -> None:
        """Begin capturing. ``scheduler`` is an APScheduler scheduler for sources that poll."""
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._counters[name] = self._counters.get(name, 0) + amount
            if name == "events_received":
                self.last_event_at = utc_now()

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._counters)
            last_event_at = self.last_event_at
        stats.update(
            {
                "mode": self.mode,
                "is_running": self.is_running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_event_at": last_event_at.isoformat() if last_event_at else None,
            }
        )
        return stats
