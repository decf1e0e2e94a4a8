"""Select the event source once at startup."""

from typing import Optional

from movenotify.config.models import EventCaptureConfig, EventCaptureMode
from movenotify.logging import get_logger

from .base import EventSource
from .change_feed import ChangeFeedEventSource, probe_change_feed
from .exceptions import ChangeFeedUnavailableError
from .handlers import ChangeDispatcher
from .polling import PollingEventSource

logger = get_logger(__name__, component="event_capture")


def _polling(config: EventCaptureConfig, dispatcher: ChangeDispatcher) -> PollingEventSource:
    return PollingEventSource(
        dispatcher,
        interval_seconds=config.poll_interval_seconds,
        initial_delay_seconds=config.poll_initial_delay_seconds,
    )


def create_event_source(
    dispatcher: ChangeDispatcher,
    config: Optional[EventCaptureConfig] = None,
) -> EventSource:
    """Build the event source for ``config.mode``.

    ``auto`` probes for a change feed and falls back to polling when the
    probe fails; the gap is logged once here and never re-checked.

    Raises:
        ChangeFeedUnavailableError: If ``change_feed`` mode is forced and the probe fails
    """
    config = config or EventCaptureConfig()
    mode = config.mode

    if mode == EventCaptureMode.POLLING.value:
        logger.info("Event capture using polling", extra={"event": "event_capture.selected", "mode": "polling"})
        return _polling(config, dispatcher)

    try:
        session_factory = probe_change_feed()
    except ChangeFeedUnavailableError as e:
        if mode == EventCaptureMode.CHANGE_FEED.value:
            raise
        logger.info(
            f"Change feed unavailable, falling back to polling: {e}",
            extra={"event": "event_capture.fallback", "mode": "polling", "reason": str(e)},
        )
        return _polling(config, dispatcher)

    logger.info("Event capture using change feed", extra={"event": "event_capture.selected", "mode": "change_feed"})
    return ChangeFeedEventSource(dispatcher, session_factory=session_factory, queue_size=config.queue_size)
