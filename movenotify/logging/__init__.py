"""Structured logging for the notification service.

Loggers obtained through :func:`get_logger` carry a ``component`` field;
every record additionally receives the static service fields and whatever
is active in :func:`log_context` (job name, run id, event source...).
"""

import logging
from typing import Optional

from .context import log_context


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges its component with per-call extra fields."""

    def process(self, msg, kwargs):
        # Per-call extra wins over the adapter default
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, component: Optional[str] = None):
    """Get a logger, optionally bound to a component name.

    Args:
        name: Logger name (typically __name__)
        component: Component identifier injected into every record

    Example:
        >>> logger = get_logger(__name__, component="cleanup")
        >>> logger.info("Archived notifications", extra={"event": "cleanup.archived"})
    """
    logger = logging.getLogger(name)
    if component:
        return ComponentLoggerAdapter(logger, {"component": component})
    return logger


__all__ = ["ComponentLoggerAdapter", "get_logger", "log_context"]
