"""Live change feed built on SQLAlchemy session events.

Every flush through the application's session factory is inspected for
inserted, updated and deleted users, quotations and receipts. Captured
changes are held on the session until it commits (discarded on rollback)
and then queued for a single consumer thread that dispatches them.

Only writes made through the ORM session factory are seen; bulk
``UPDATE``/``DELETE`` statements and writes from other processes are not.
"""

import queue
import threading
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, sessionmaker

from movenotify.domain.models import ChangeEvent, ChangeOperation
from movenotify.logging import get_logger, log_context
from movenotify.persistence import get_session_factory, is_initialized
from movenotify.persistence.exceptions import DatabaseConnectionError
from movenotify.persistence.schema import WATCHED_MODELS
from movenotify.utils.timestamps import utc_now

from .base import EventSource
from .exceptions import ChangeFeedUnavailableError
from .handlers import ChangeDispatcher

logger = get_logger(__name__, component="change_feed")

PENDING_KEY = "movenotify.pending_changes"

# How long the consumer waits on an empty queue before re-checking for shutdown
_QUEUE_POLL_SECONDS = 0.5


def _document(obj: Any) -> Dict[str, Any]:
    return obj.to_domain().model_dump()


def _capture(obj: Any, operation: ChangeOperation) -> Optional[ChangeEvent]:
    entity = WATCHED_MODELS.get(type(obj))
    if entity is None:
        return None

    document = _document(obj)
    changes: Dict[str, Any] = {}
    previous: Dict[str, Any] = {}

    if operation == ChangeOperation.UPDATE:
        state = inspect(obj)
        for attr in state.mapper.column_attrs:
            history = state.attrs[attr.key].history
            if not history.added:
                continue
            changes[attr.key] = document.get(attr.key)
            previous[attr.key] = history.deleted[0] if history.deleted else None
        if not changes:
            return None

    return ChangeEvent(
        entity=entity,
        operation=operation,
        entity_id=str(obj.id),
        document=document,
        changes=changes,
        previous=previous,
    )


def probe_change_feed() -> sessionmaker:
    """Return the session factory the feed would attach to.

    Raises:
        ChangeFeedUnavailableError: If there is no session factory to carry session events
    """
    if not is_initialized():
        raise ChangeFeedUnavailableError("Database is not initialised, no session events to listen to")
    try:
        return get_session_factory()
    except DatabaseConnectionError as e:
        raise ChangeFeedUnavailableError(str(e)) from e


class ChangeFeedEventSource(EventSource):
    """Captures ORM writes in-process and dispatches them on a worker thread."""

    mode = "change_feed"

    def __init__(
        self,
        dispatcher: ChangeDispatcher,
        session_factory: Optional[sessionmaker] = None,
        queue_size: int = 10000,
    ):
        super().__init__()
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self._queue: "queue.Queue[Optional[ChangeEvent]]" = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._listening = False
        self._counters["events_dropped"] = 0

    @property
    def is_running(self) -> bool:
        return self._listening and self._thread is not None and self._thread.is_alive()

    def start(self, scheduler: Any = None) -> None:
        if self._listening:
            return

        if self.session_factory is None:
            self.session_factory = probe_change_feed()

        event.listen(self.session_factory, "after_flush", self._after_flush)
        event.listen(self.session_factory, "after_commit", self._after_commit)
        event.listen(self.session_factory, "after_rollback", self._after_rollback)
        self._listening = True

        self._thread = threading.Thread(target=self._consume, name="change-feed-consumer", daemon=True)
        self._thread.start()
        self.started_at = utc_now()

        logger.info("Change feed started", extra={"event": "event_capture.started", "mode": self.mode})

    def stop(self, timeout: float = 5.0) -> None:
        if not self._listening:
            return

        event.remove(self.session_factory, "after_flush", self._after_flush)
        event.remove(self.session_factory, "after_commit", self._after_commit)
        event.remove(self.session_factory, "after_rollback", self._after_rollback)
        self._listening = False

        # Sentinel; the consumer drains what was queued before it
        self._queue.put(None)
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

        logger.info("Change feed stopped", extra={"event": "event_capture.stopped", "mode": self.mode})

    # ------------------------------------------------------------------
    # Session hooks
    # ------------------------------------------------------------------

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        # new/dirty/deleted and attribute history still describe the flush here
        candidates = [(obj, ChangeOperation.INSERT) for obj in session.new]
        candidates += [
            (obj, ChangeOperation.UPDATE)
            for obj in session.dirty
            if session.is_modified(obj, include_collections=False)
        ]
        candidates += [(obj, ChangeOperation.DELETE) for obj in session.deleted]

        captured: List[ChangeEvent] = []
        for obj, operation in candidates:
            try:
                change = _capture(obj, operation)
            except Exception as e:
                # Never fail the write that is being observed
                self._count("events_failed")
                logger.error(
                    f"Failed to capture {operation.value} of {type(obj).__name__}: {e}",
                    extra={"event": "event_capture.capture_failed", "error_type": type(e).__name__},
                    exc_info=True,
                )
                continue
            if change is not None:
                captured.append(change)

        if captured:
            session.info.setdefault(PENDING_KEY, []).extend(captured)

    def _after_commit(self, session: Session) -> None:
        pending = session.info.pop(PENDING_KEY, None)
        if not pending:
            return
        for change in pending:
            try:
                self._queue.put_nowait(change)
                self._count("events_received")
            except queue.Full:
                self._count("events_dropped")
                logger.warning(
                    "Change feed queue full, dropping event",
                    extra={"event": "event_capture.dropped", "entity": change.entity, "entity_id": change.entity_id},
                )

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(PENDING_KEY, None)

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    def _consume(self) -> None:
        while True:
            try:
                change = self._queue.get(timeout=_QUEUE_POLL_SECONDS)
            except queue.Empty:
                if not self._listening:
                    return
                continue

            if change is None:
                self._queue.task_done()
                self._drain()
                return
            self._handle(change)
            self._queue.task_done()

    def _drain(self) -> None:
        while True:
            try:
                change = self._queue.get_nowait()
            except queue.Empty:
                return
            if change is not None:
                self._handle(change)
            self._queue.task_done()

    def _handle(self, change: ChangeEvent) -> None:
        with log_context(event_source=self.mode, entity=change.entity, entity_id=change.entity_id):
            try:
                created = self.dispatcher.dispatch(change)
                self._count("events_dispatched")
                self._count("notifications_created", len(created))
            except Exception as e:
                self._count("events_failed")
                logger.error(
                    f"Failed to handle {change.operation} of {change.entity}: {e}",
                    extra={"event": "event_capture.handle_failed", "error_type": type(e).__name__},
                    exc_info=True,
                )

    def wait_until_idle(self, timeout: float = 5.0) -> bool:
        """Block until every queued event has been handled or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.02)
        return True
