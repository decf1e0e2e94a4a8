"""Notification lifecycle and delivery service for moving-company operations."""

__version__ = "1.0.0"
