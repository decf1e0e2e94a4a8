"""Soft checks on raw configuration that produce warnings, not errors."""

import warnings
from typing import Any, Dict, List


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Check raw configuration for settings that are valid but probably unintended.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    messages = []

    retention = config_dict.get("retention") or {}
    if isinstance(retention, dict):
        archive_age = retention.get("min_age_for_archiving", 60)
        delete_age = retention.get("min_age_for_deletion", 180)
        if isinstance(archive_age, int) and isinstance(delete_age, int) and delete_age < archive_age:
            messages.append(
                f"retention.min_age_for_deletion ({delete_age}) is shorter than "
                f"min_age_for_archiving ({archive_age}); archived items will be deleted immediately"
            )

        if retention.get("preserve_important_notifications") is False:
            messages.append(
                "retention.preserve_important_notifications is false; "
                "payment and security notifications may be archived or deleted"
            )

        if retention.get("enable_auto_cleanup") is False:
            messages.append("retention.enable_auto_cleanup is false; cleanup runs will be no-ops")

        if retention.get("max_archive_size") == 0 and retention.get("archive_before_delete", True):
            messages.append(
                "retention.max_archive_size is 0; every archived notification will be deleted "
                "on the next cleanup run"
            )

    event_capture = config_dict.get("event_capture") or {}
    if isinstance(event_capture, dict) and event_capture.get("mode") == "polling":
        messages.append(
            "event_capture.mode is 'polling'; only expired quotations and overdue payments "
            "will produce notifications"
        )

    return messages


def emit_warnings(warning_messages: List[str]) -> None:
    """Emit each message as a UserWarning."""
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
