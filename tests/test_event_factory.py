"""Tests for selecting the event source at startup."""

from unittest.mock import Mock

import pytest

from movenotify.config.models import EventCaptureConfig
from movenotify.events import (
    ChangeFeedEventSource,
    ChangeFeedUnavailableError,
    PollingEventSource,
    create_event_source,
)
from movenotify.persistence import close_database, init_database


class TestCreateEventSource:
    def test_polling_mode(self):
        source = create_event_source(Mock(), EventCaptureConfig(mode="polling", poll_interval="15m"))

        assert isinstance(source, PollingEventSource)
        assert source.interval_seconds == 900
        assert source.initial_delay_seconds == 60

    def test_auto_uses_change_feed_when_available(self):
        init_database("sqlite:///:memory:")
        try:
            source = create_event_source(Mock(), EventCaptureConfig(queue_size=5))
        finally:
            close_database()

        assert isinstance(source, ChangeFeedEventSource)
        assert source._queue.maxsize == 5

    def test_auto_falls_back_to_polling(self):
        close_database()

        source = create_event_source(Mock(), EventCaptureConfig(mode="auto"))

        assert isinstance(source, PollingEventSource)

    def test_forced_change_feed_fails_loudly(self):
        close_database()

        with pytest.raises(ChangeFeedUnavailableError):
            create_event_source(Mock(), EventCaptureConfig(mode="change_feed"))
