"""Title and message rendering for notifications using Jinja2.

Templates are declared inline, one title/message pair per key. Keys are
notification types plus a few job-specific messages (lifecycle reminder,
cleanup report) that share the ``system_maintenance`` type.
"""

import logging
from typing import Any, Dict, Tuple

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateError

from .exceptions import NotificationTemplateError

logger = logging.getLogger(__name__)

LIFECYCLE_REMINDER = "lifecycle_reminder"
CLEANUP_REPORT = "cleanup_report"

_TEMPLATES: Dict[str, Tuple[str, str]] = {
    "user_created": (
        "New user registered",
        "{{ user.full_name }} ({{ user.email }}) joined as {{ user.role }}.",
    ),
    "profile_incomplete": (
        "Complete your profile",
        "Welcome {{ user.full_name }}! Please complete your profile to get full access.",
    ),
    "user_updated": (
        "User updated",
        "{{ user.full_name }}'s account was updated: {{ changes | map(attribute='label') | join(', ') }}.",
    ),
    "user_role_changed": (
        "User role changed",
        "{{ user.full_name }}'s role changed from {{ old_role }} to {{ new_role }}.",
    ),
    "user_suspended": (
        "User suspended",
        "{{ user.full_name }}'s account has been suspended.",
    ),
    "user_activated": (
        "User activated",
        "{{ user.full_name }}'s account is active again.",
    ),
    "user_deleted": (
        "User removed",
        "{{ user.full_name }} was removed from the system.",
    ),
    "document_created": (
        "{{ reference }} created",
        "{{ reference }} for {{ document.customer_name }} was created.",
    ),
    "document_updated": (
        "{{ reference }} updated",
        "{{ reference }} for {{ document.customer_name }} was updated: "
        "{{ changes | map(attribute='label') | join(', ') }}.",
    ),
    "document_deleted": (
        "{{ reference }} deleted",
        "{{ reference }} for {{ document.customer_name }} was deleted.",
    ),
    "quotation_expired": (
        "Quotation expired",
        "Quotation {{ quotation.quotation_number }} for {{ quotation.customer_name }} "
        "expired on {{ valid_until }}.",
    ),
    "quotation_converted": (
        "Quotation converted",
        "Quotation {{ quotation.quotation_number }} for {{ quotation.customer_name }} was converted.",
    ),
    "payment_received": (
        "Payment received",
        "Receipt {{ receipt.receipt_number }} from {{ receipt.customer_name }} has been paid "
        "({{ '%.2f' | format(receipt.amount) }}).",
    ),
    "payment_overdue": (
        "Payment overdue",
        "Receipt {{ receipt.receipt_number }} for {{ receipt.customer_name }} was due on {{ due_date }}.",
    ),
    LIFECYCLE_REMINDER: (
        "Notification pending review",
        "\"{{ original_title }}\" ({{ original_type }}) is {{ age_days }} days old and needs review: "
        "extend, archive or delete it.",
    ),
    CLEANUP_REPORT: (
        "Notification Cleanup Report",
        "Auto-cleanup completed: {{ archived }} notifications archived, {{ deleted }} deleted. "
        "Current storage: {{ total }} notifications using ~{{ size_mb }}MB.",
    ),
}


class NotificationTemplates:
    """Renders notification titles and messages.

    Missing template variables raise instead of rendering blanks.
    """

    def __init__(self, templates: Dict[str, Tuple[str, str]] = None):
        source = templates if templates is not None else _TEMPLATES
        mapping = {}
        for key, (title, message) in source.items():
            mapping[f"{key}.title"] = title
            mapping[f"{key}.message"] = message

        self.keys = frozenset(source)
        self.env = Environment(
            loader=DictLoader(mapping),
            autoescape=False,  # plain text, rendered by the client
            undefined=StrictUndefined,
            keep_trailing_newline=False,
        )

    def render(self, key: str, **context: Any) -> Tuple[str, str]:
        """Render ``(title, message)`` for ``key``.

        Raises:
            NotificationTemplateError: If the key is unknown or rendering fails
        """
        if key not in self.keys:
            raise NotificationTemplateError(f"No notification template for '{key}'")

        try:
            title = self.env.get_template(f"{key}.title").render(**context).strip()
            message = self.env.get_template(f"{key}.message").render(**context).strip()
        except TemplateError as e:
            logger.error(
                f"Failed to render notification template '{key}': {e}",
                extra={"event": "notification.template.failed", "template": key},
            )
            raise NotificationTemplateError(f"Failed to render template '{key}': {e}") from e

        return title, message
