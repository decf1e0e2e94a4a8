#!/usr/bin/env python3
"""Check a movenotify configuration file and print what it would run with."""

import sys
import warnings
from pathlib import Path

import yaml

from movenotify.config import ConfigurationError, build_app_config
from movenotify.config.validators import check_for_warnings


def verify_config_structure(config_file: Path = Path("config.example.yaml")) -> bool:
    """Validate ``config_file`` and print a summary of the effective settings."""
    if not config_file.exists():
        print(f"✗ {config_file} not found")
        return False

    try:
        with open(config_file, "r") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        print(f"✗ Failed to parse {config_file}: {e}")
        return False

    if not isinstance(raw, dict):
        print(f"✗ {config_file} must contain a mapping at the top level")
        return False

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            config = build_app_config(raw)
    except ConfigurationError as e:
        print(f"✗ {config_file} validation failed:")
        print(e)
        return False

    print(f"✓ {config_file} is valid")
    print(f"  - Event capture: {config.event_capture.mode}")
    if config.event_capture.mode != "change_feed":
        print(f"  - Poll interval: {config.event_capture.poll_interval}")
    print(f"  - Read reconciliation every {config.scheduler.reconciliation_interval}")
    print(f"  - Lifecycle daily at {config.scheduler.lifecycle_run_time} ({config.scheduler.timezone})")
    print(f"  - Cleanup every {config.scheduler.cleanup_interval}")

    retention = config.retention
    print(
        f"  - Archive after {retention.min_age_for_archiving}d, "
        f"delete after {retention.min_age_for_deletion}d, "
        f"archive cap {retention.max_archive_size}"
    )
    if retention.preserve_important_notifications:
        print(f"  - Preserved types: {', '.join(retention.important_notification_types)}")

    for message in check_for_warnings(raw):
        print(f"  ! {message}")
    return True


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("config.example.yaml")
    success = verify_config_structure(path)
    sys.exit(0 if success else 1)
