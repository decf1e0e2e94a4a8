"""Exceptions raised while capturing upstream changes."""


class EventCaptureError(Exception):
    """Base exception for change capture and dispatch."""

    pass


class ChangeFeedUnavailableError(EventCaptureError):
    """Raised by the startup probe when the store cannot carry a change feed."""

    pass


class UnknownEntityError(EventCaptureError):
    """Raised when asked to handle an entity kind that is not watched."""

    pass
