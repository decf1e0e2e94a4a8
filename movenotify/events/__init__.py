"""Capture of upstream entity changes and the notifications they produce."""

from .base import EventSource
from .change_feed import ChangeFeedEventSource, probe_change_feed
from .exceptions import ChangeFeedUnavailableError, EventCaptureError, UnknownEntityError
from .factory import create_event_source
from .handlers import ChangeDispatcher
from .polling import PollingEventSource

__all__ = [
    "EventSource",
    "ChangeFeedEventSource",
    "PollingEventSource",
    "ChangeDispatcher",
    "create_event_source",
    "probe_change_feed",
    "EventCaptureError",
    "ChangeFeedUnavailableError",
    "UnknownEntityError",
]
