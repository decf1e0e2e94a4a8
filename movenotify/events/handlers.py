"""Turn captured upstream changes into notifications.

Recipients:
- stakeholders of a document are the active admins plus its creator
- generic "updated" notifications go to active admins only
- user deletions are announced to every active user

For updates, the first matching transition wins and exactly one
notification path runs per event.
"""

from typing import Any, Callable, Dict, List, Optional

from movenotify.domain.models import (
    ChangeEvent,
    ChangeOperation,
    EntityKind,
    Notification,
    NotificationType,
    PaymentStatus,
    Priority,
    QuotationStatus,
    UserStatus,
)
from movenotify.domain.schemas import get_entity_schema
from movenotify.logging import get_logger
from movenotify.notifications.service import NotificationService
from movenotify.persistence import QuotationRepository, ReceiptRepository, UserRepository, get_session

from .exceptions import EventCaptureError, UnknownEntityError

logger = get_logger(__name__, component="event_dispatch")

_REPOSITORIES = {
    EntityKind.USER.value: UserRepository,
    EntityKind.QUOTATION.value: QuotationRepository,
    EntityKind.RECEIPT.value: ReceiptRepository,
}

_PRIORITIES = {
    NotificationType.USER_ROLE_CHANGED.value: Priority.HIGH.value,
    NotificationType.USER_SUSPENDED.value: Priority.HIGH.value,
    NotificationType.USER_DELETED.value: Priority.HIGH.value,
    NotificationType.PAYMENT_OVERDUE.value: Priority.HIGH.value,
    NotificationType.QUOTATION_EXPIRED.value: Priority.NORMAL.value,
    NotificationType.DOCUMENT_UPDATED.value: Priority.LOW.value,
    NotificationType.USER_UPDATED.value: Priority.LOW.value,
}

_ACTION_URLS = {
    EntityKind.USER.value: "/admin/users/{id}",
    EntityKind.QUOTATION.value: "/quotations/{id}",
    EntityKind.RECEIPT.value: "/receipts/{id}",
}


def _entity_key(entity: Any) -> str:
    return entity.value if isinstance(entity, EntityKind) else str(entity)


class ChangeDispatcher:
    """Applies the notification rules to one :class:`ChangeEvent` at a time."""

    def __init__(self, notification_service: NotificationService, session_factory=get_session):
        self.notification_service = notification_service
        self.session_factory = session_factory
        self._handlers: Dict[str, Callable[[ChangeEvent], List[Notification]]] = {
            EntityKind.USER.value: self._handle_user,
            EntityKind.QUOTATION.value: self._handle_document,
            EntityKind.RECEIPT.value: self._handle_document,
        }

    def dispatch(self, event: ChangeEvent) -> List[Notification]:
        """Produce the notifications for ``event``.

        Returns:
            The notifications created (possibly none)

        Raises:
            UnknownEntityError: If the entity kind is not watched
        """
        handler = self._handlers.get(event.entity)
        if handler is None:
            raise UnknownEntityError(f"No handler for entity '{event.entity}'")

        created = [n for n in handler(event) if n is not None]
        logger.debug(
            "Change dispatched",
            extra={
                "event": "event_dispatch.handled",
                "entity": event.entity,
                "operation": event.operation,
                "entity_id": event.entity_id,
                "notifications": len(created),
            },
        )
        return created

    def trigger(self, entity: Any, entity_id: str, operation: str = ChangeOperation.INSERT.value) -> List[Notification]:
        """Replay the creation of an existing record.

        Used when neither the change feed nor polling saw the insert. Delivery
        is at-least-once: a replayed insert may duplicate a notification the
        feed already produced. Updates and deletes carry state the record no
        longer holds, so only inserts can be replayed.

        Raises:
            UnknownEntityError: If ``entity`` is not watched
            EventCaptureError: If ``operation`` is not an insert
        """
        key = _entity_key(entity)
        repository_class = _REPOSITORIES.get(key)
        if repository_class is None:
            raise UnknownEntityError(f"Unknown entity '{key}'")
        if operation != ChangeOperation.INSERT.value:
            raise EventCaptureError(f"Only inserts can be triggered manually, not '{operation}'")

        with self.session_factory() as session:
            record = repository_class(session).get(entity_id)

        if record is None:
            logger.warning(
                f"Cannot trigger notification, {key} {entity_id} not found",
                extra={"event": "event_dispatch.trigger.not_found", "entity": key, "entity_id": entity_id},
            )
            return []

        event = ChangeEvent(
            entity=key,
            operation=operation,
            entity_id=entity_id,
            document=record.model_dump(),
        )
        logger.info(
            "Manually triggered change notification",
            extra={"event": "event_dispatch.triggered", "entity": key, "entity_id": entity_id, "operation": operation},
        )
        return self.dispatch(event)

    # ------------------------------------------------------------------
    # Recipients
    # ------------------------------------------------------------------

    def _admin_ids(self, exclude: Optional[str] = None) -> List[str]:
        with self.session_factory() as session:
            ids = UserRepository(session).active_admin_ids()
        return [i for i in ids if i != exclude]

    def _active_user_ids(self) -> List[str]:
        with self.session_factory() as session:
            return UserRepository(session).active_user_ids()

    def _stakeholder_ids(self, document: Dict[str, Any]) -> List[str]:
        ids = self._admin_ids()
        creator = document.get("created_by")
        if creator and creator not in ids:
            ids.append(creator)
        return ids

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _send(
        self,
        notification_type: NotificationType,
        event: ChangeEvent,
        recipient_ids: List[str],
        context: Dict[str, Any],
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        type_value = notification_type.value
        return self.notification_service.fan_out_template(
            type_value,
            context,
            notification_type=type_value,
            recipient_ids=recipient_ids,
            priority=_PRIORITIES.get(type_value, Priority.NORMAL.value),
            actor_id=actor_id,
            action_url=_ACTION_URLS[event.entity].format(id=event.entity_id)
            if event.operation != ChangeOperation.DELETE.value
            else None,
            action_text="View" if event.operation != ChangeOperation.DELETE.value else None,
            notification_group=f"{type_value}_{event.entity_id}",
            metadata={
                "entity": event.entity,
                "entity_id": event.entity_id,
                "operation": event.operation,
                **(metadata or {}),
            },
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _handle_user(self, event: ChangeEvent) -> List[Optional[Notification]]:
        user = event.document
        context = {"user": user}

        if event.operation == ChangeOperation.INSERT.value:
            created = [
                self._send(
                    NotificationType.USER_CREATED, event, self._admin_ids(), context, actor_id=user.get("created_by")
                )
            ]
            if not user.get("profile_completed", True):
                created.append(self._send(NotificationType.PROFILE_INCOMPLETE, event, [event.entity_id], context))
            return created

        if event.operation == ChangeOperation.DELETE.value:
            recipients = [i for i in self._active_user_ids() if i != event.entity_id]
            return [self._send(NotificationType.USER_DELETED, event, recipients, context)]

        status = event.changes.get("status")
        if status == UserStatus.SUSPENDED.value:
            return [self._send(NotificationType.USER_SUSPENDED, event, self._admin_ids() + [event.entity_id], context)]
        if status == UserStatus.ACTIVE.value:
            return [self._send(NotificationType.USER_ACTIVATED, event, self._admin_ids() + [event.entity_id], context)]

        if event.changed("role"):
            old_role = event.previous.get("role")
            new_role = event.changes["role"]
            recipients = self._admin_ids(exclude=event.entity_id) + [event.entity_id]
            return [
                self._send(
                    NotificationType.USER_ROLE_CHANGED,
                    event,
                    recipients,
                    {**context, "old_role": old_role, "new_role": new_role},
                    metadata={"old_role": old_role, "new_role": new_role},
                )
            ]

        return [self._send_generic_update(NotificationType.USER_UPDATED, event, context)]

    # ------------------------------------------------------------------
    # Quotations and receipts
    # ------------------------------------------------------------------

    def _handle_document(self, event: ChangeEvent) -> List[Optional[Notification]]:
        document = event.document
        schema = get_entity_schema(event.entity)
        context = {
            "reference": schema.reference(document),
            "document": document,
            event.entity: document,
        }

        if event.operation == ChangeOperation.INSERT.value:
            return [
                self._send(
                    NotificationType.DOCUMENT_CREATED,
                    event,
                    self._stakeholder_ids(document),
                    context,
                    actor_id=document.get("created_by"),
                )
            ]

        if event.operation == ChangeOperation.DELETE.value:
            return [self._send(NotificationType.DOCUMENT_DELETED, event, self._admin_ids(), context)]

        if event.entity == EntityKind.RECEIPT.value and event.changes.get("payment_status") == PaymentStatus.PAID.value:
            return [self._send(NotificationType.PAYMENT_RECEIVED, event, self._stakeholder_ids(document), context)]

        if event.entity == EntityKind.QUOTATION.value and (
            event.changes.get("status") == QuotationStatus.CONVERTED.value or event.changes.get("converted") is True
        ):
            return [self._send(NotificationType.QUOTATION_CONVERTED, event, self._stakeholder_ids(document), context)]

        return [self._send_generic_update(NotificationType.DOCUMENT_UPDATED, event, context)]

    def _send_generic_update(
        self, notification_type: NotificationType, event: ChangeEvent, context: Dict[str, Any]
    ) -> Optional[Notification]:
        changes = get_entity_schema(event.entity).describe_changes(event.changes)
        if not changes:
            logger.debug(
                "Update touched no labelled fields",
                extra={"event": "event_dispatch.update.ignored", "entity": event.entity, "entity_id": event.entity_id},
            )
            return None

        change_dicts = [c.model_dump() for c in changes]
        return self._send(
            notification_type,
            event,
            self._admin_ids(),
            {**context, "changes": change_dicts},
            metadata={"changes": change_dicts},
        )
