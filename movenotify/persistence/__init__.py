"""Persistence layer: SQLAlchemy engine/session management and repositories.

Example usage:
    >>> from movenotify.persistence import init_database, get_session, NotificationRepository
    >>> init_database("sqlite:///./data/notifications.db")
    >>> with get_session() as session:
    ...     repo = NotificationRepository(session)
    ...     notification = repo.get("3f2a...")
"""

from .database import (
    close_database,
    get_engine,
    get_session,
    get_session_factory,
    init_database,
    is_initialized,
)
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .repositories import (
    NotificationRepository,
    QuotationRepository,
    ReceiptRepository,
    SettingsRepository,
    UserRepository,
)
from .statistics import NotificationStatsRepository

__all__ = [
    "init_database",
    "get_session",
    "get_session_factory",
    "get_engine",
    "close_database",
    "is_initialized",
    "NotificationRepository",
    "NotificationStatsRepository",
    "QuotationRepository",
    "ReceiptRepository",
    "SettingsRepository",
    "UserRepository",
    "PersistenceError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "DataIntegrityError",
]
