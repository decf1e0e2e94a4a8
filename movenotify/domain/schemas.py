"""Declarative per-entity field labels for update notifications.

Generic "updated" notifications list what changed. Only fields named in an
entity's schema are reported; anything else (timestamps, internal flags)
is ignored. When no labelled field changed, no notification is produced.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping

from .models import EntityKind, FieldChange


@dataclass(frozen=True)
class EntitySchema:
    """Display metadata for one upstream entity."""

    entity: str
    display_name: str
    number_field: str
    labels: Mapping[str, str] = field(default_factory=dict)

    def describe_changes(self, changes: Dict[str, Any]) -> List[FieldChange]:
        """Turn a raw ``{field: new_value}`` diff into labelled changes.

        Order follows the schema declaration so messages are stable.
        """
        described = []
        for name, label in self.labels.items():
            if name in changes:
                described.append(
                    FieldChange(field=name, label=label, value=_display_value(changes[name]))
                )
        return described

    def reference(self, document: Dict[str, Any]) -> str:
        """Human reference for a document, e.g. ``Quotation Q-1001``."""
        number = document.get(self.number_field) or document.get("id", "")
        return f"{self.display_name} {number}".strip()


def _display_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


ENTITY_SCHEMAS: Dict[str, EntitySchema] = {
    EntityKind.USER.value: EntitySchema(
        entity=EntityKind.USER.value,
        display_name="User",
        number_field="full_name",
        labels={
            "full_name": "Full name",
            "email": "Email",
            "role": "Role",
            "status": "Status",
            "profile_completed": "Profile completed",
        },
    ),
    EntityKind.QUOTATION.value: EntitySchema(
        entity=EntityKind.QUOTATION.value,
        display_name="Quotation",
        number_field="quotation_number",
        labels={
            "quotation_number": "Quotation number",
            "customer_name": "Customer",
            "total_amount": "Total amount",
            "valid_until": "Valid until",
            "status": "Status",
        },
    ),
    EntityKind.RECEIPT.value: EntitySchema(
        entity=EntityKind.RECEIPT.value,
        display_name="Receipt",
        number_field="receipt_number",
        labels={
            "receipt_number": "Receipt number",
            "customer_name": "Customer",
            "amount": "Amount",
            "due_date": "Due date",
            "status": "Status",
            "payment_status": "Payment status",
        },
    ),
}


def get_entity_schema(entity: str) -> EntitySchema:
    """Look up the schema for ``entity`` (an :class:`EntityKind` or its value)."""
    key = entity.value if isinstance(entity, EntityKind) else entity
    try:
        return ENTITY_SCHEMAS[key]
    except KeyError:
        raise KeyError(f"No field schema registered for entity '{key}'") from None
