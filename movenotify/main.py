"""Main entry point for the notification lifecycle service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from movenotify.config.environment import EnvironmentConfig
from movenotify.config.exceptions import ConfigurationError
from movenotify.config.loader import load_config
from movenotify.config.models import AppConfig
from movenotify.events import ChangeDispatcher, EventSource, create_event_source
from movenotify.jobs import CleanupJob, LifecycleJob, ReadReconciliationJob
from movenotify.logging import get_logger
from movenotify.logging.config import configure_logging
from movenotify.notifications import AdminNotificationService, NotificationService, SettingsStore
from movenotify.persistence.database import close_database, init_database
from movenotify.scheduler import JobScheduler, JobNotFoundError

logger = get_logger(__name__, component="cli")


@dataclass
class Application:
    """The wired service graph."""

    settings: SettingsStore
    notifications: NotificationService
    admin: AdminNotificationService
    scheduler: JobScheduler
    event_source: Optional[EventSource]


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """Load configuration and settle the log level (CLI > environment > config file).

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level or "INFO"

    return app_config, env_config


def build_application(
    app_config: AppConfig,
    env_config: EnvironmentConfig,
    with_event_source: bool = True,
) -> Application:
    """Wire settings, services, jobs, event capture and the scheduler.

    The database must already be initialised.
    """
    settings = SettingsStore(defaults=app_config.retention)
    settings.load()

    notifications = NotificationService()
    cleanup = CleanupJob(settings, notifications)
    lifecycle = LifecycleJob(settings, notifications, config=app_config.lifecycle)
    reconciliation = ReadReconciliationJob(settings, config=app_config.reconciliation, cleanup_job=cleanup)

    event_source = None
    if with_event_source:
        dispatcher = ChangeDispatcher(notifications)
        event_source = create_event_source(dispatcher, app_config.event_capture)

    scheduler = JobScheduler(
        [reconciliation, lifecycle, cleanup],
        config=app_config.scheduler,
        event_source=event_source,
        environment=env_config.environment,
    )
    admin = AdminNotificationService(notifications, settings, scheduler=scheduler)

    return Application(
        settings=settings,
        notifications=notifications,
        admin=admin,
        scheduler=scheduler,
        event_source=event_source,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main() -> int:
    """
    Main entry point for the notification lifecycle service.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="movenotify - notification capture, lifecycle and retention service"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml or config/config.yaml if present)",
    )
    parser.add_argument(
        "--run-job",
        default=None,
        metavar="NAME",
        help="Run one job (read_reconciliation, lifecycle or cleanup) immediately and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print what the next cleanup run would do and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )

    args = parser.parse_args()

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level)

        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=env_config.environment,
        )

        one_shot = bool(args.run_job or args.dry_run)
        logger.info(
            "movenotify starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "environment": env_config.environment,
                "run_job": args.run_job,
                "dry_run": args.dry_run,
            },
        )

        init_database(env_config.database_url)
        app = build_application(app_config, env_config, with_event_source=not one_shot)

        if args.dry_run:
            preview = app.admin.preview_cleanup()
            _print_json(preview.to_dict())
            close_database()
            return 0

        if args.run_job:
            try:
                result = app.scheduler.run_job(args.run_job)
            except JobNotFoundError as e:
                print(f"Error: {e}", file=sys.stderr)
                close_database()
                return 2
            _print_json(result.to_dict())
            close_database()
            logger.info(
                "movenotify stopped",
                extra={"event": "service.stopping", "uptime_seconds": round(time.time() - start_time, 2)},
            )
            return 0

        # Daemon mode
        shutdown_event = threading.Event()

        def signal_handler(signum, frame):
            logger.info(
                f"Received signal {signum}, shutting down",
                extra={"event": "service.signal_received", "signal": signum},
            )
            shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        app.scheduler.start()
        logger.info("Scheduler started. Press Ctrl+C to stop", extra={"event": "service.daemon_mode.started"})

        try:
            shutdown_event.wait()
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down", extra={"event": "service.keyboard_interrupt"})

        app.scheduler.stop()
        close_database()
        logger.info(
            "movenotify stopped",
            extra={"event": "service.stopping", "uptime_seconds": round(time.time() - start_time, 2)},
        )
        return 0

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": "ConfigurationError"},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={"event": "service.startup.failed", "error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
