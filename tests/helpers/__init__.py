"""Test helper utilities for movenotify tests."""

from .factories import (
    NOW,
    add_admins,
    add_quotation,
    add_receipt,
    add_users,
    load,
    load_all,
    make_notification,
    make_user,
    settings_store,
    store,
    store_aged,
)

__all__ = [
    "NOW",
    "add_admins",
    "add_quotation",
    "add_receipt",
    "add_users",
    "load",
    "load_all",
    "make_notification",
    "make_user",
    "settings_store",
    "store",
    "store_aged",
]
