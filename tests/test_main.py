"""Unit tests for the main entry point.

Tests the main() function including:
- Log level priority (CLI > env > config)
- Application wiring
- One-shot modes (--run-job, --dry-run) vs daemon mode
- Exit code handling
"""

import json
from unittest.mock import Mock, patch

import pytest

from movenotify.config.environment import EnvironmentConfig
from movenotify.config.exceptions import ConfigurationError
from movenotify.config.models import AppConfig, EventCaptureConfig, LoggingConfig
from movenotify.events import PollingEventSource
from movenotify.main import build_application, load_runtime_config, main
from movenotify.persistence import close_database, init_database


def memory_env(**kwargs):
    return EnvironmentConfig(database_url="sqlite:///:memory:", environment="test", log_level="INFO", **kwargs)


class TestLoadRuntimeConfig:
    """Test suite for load_runtime_config helper."""

    def test_log_level_priority(self, tmp_path):
        """CLI > env > config."""
        config_file = tmp_path / "config.yaml"

        with patch("movenotify.main.load_config") as mock_load:
            mock_app_config = AppConfig(logging=LoggingConfig(level="WARNING"))
            mock_env_config = EnvironmentConfig(log_level="INFO")
            mock_load.return_value = (mock_app_config, mock_env_config)

            _, env_config = load_runtime_config(config_file, "DEBUG")
            assert env_config.log_level == "DEBUG"

            mock_env_config.log_level = "INFO"
            _, env_config = load_runtime_config(config_file, None)
            assert env_config.log_level == "INFO"

            mock_env_config.log_level = None
            _, env_config = load_runtime_config(config_file, None)
            assert env_config.log_level == "WARNING"

    def test_configuration_error_propagates(self, tmp_path):
        with patch("movenotify.main.load_config") as mock_load:
            mock_load.side_effect = ConfigurationError("bad config")

            with pytest.raises(ConfigurationError):
                load_runtime_config(tmp_path / "config.yaml", None)


class TestBuildApplication:
    """Tests for wiring the service graph."""

    @pytest.fixture(autouse=True)
    def setup_database(self):
        init_database("sqlite:///:memory:")
        yield
        close_database()

    def test_wires_jobs_and_event_source(self):
        app_config = AppConfig(event_capture=EventCaptureConfig(mode="polling"))

        app = build_application(app_config, memory_env())

        assert sorted(app.scheduler.jobs) == ["cleanup", "lifecycle", "read_reconciliation"]
        assert isinstance(app.event_source, PollingEventSource)
        assert app.scheduler.event_source is app.event_source
        assert app.scheduler.environment == "test"
        assert app.admin.scheduler is app.scheduler
        assert app.scheduler.get_job("read_reconciliation").cleanup_job is app.scheduler.get_job("cleanup")

    def test_retention_defaults_come_from_config(self):
        app_config = AppConfig(retention={"min_age_for_archiving": 45})

        app = build_application(app_config, memory_env(), with_event_source=False)

        assert app.settings.snapshot().min_age_for_archiving == 45
        assert app.event_source is None


class TestMain:
    """Test suite for main() function."""

    @patch("movenotify.main.configure_logging")
    @patch("movenotify.main.load_runtime_config")
    @patch("sys.argv", ["movenotify", "--run-job", "cleanup"])
    def test_run_job(self, mock_load_config, mock_configure_logging, capsys):
        mock_load_config.return_value = (AppConfig(), memory_env())

        exit_code = main()

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["job"] == "cleanup"
        assert output["archived"] == 0

    @patch("movenotify.main.configure_logging")
    @patch("movenotify.main.load_runtime_config")
    @patch("sys.argv", ["movenotify", "--run-job", "defragment"])
    def test_run_unknown_job(self, mock_load_config, mock_configure_logging, capsys):
        mock_load_config.return_value = (AppConfig(), memory_env())

        exit_code = main()

        assert exit_code == 2
        assert "Unknown job 'defragment'" in capsys.readouterr().err

    @patch("movenotify.main.configure_logging")
    @patch("movenotify.main.load_runtime_config")
    @patch("sys.argv", ["movenotify", "--dry-run"])
    def test_dry_run(self, mock_load_config, mock_configure_logging, capsys):
        mock_load_config.return_value = (AppConfig(), memory_env())

        exit_code = main()

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["dry_run"] is True
        assert output["rules"]["min_age_for_archiving"] == 60

    @patch("movenotify.main.create_event_source")
    @patch("movenotify.main.JobScheduler")
    @patch("movenotify.main.configure_logging")
    @patch("movenotify.main.load_runtime_config")
    @patch("signal.signal")
    @patch("sys.argv", ["movenotify"])
    def test_daemon_mode(
        self,
        mock_signal,
        mock_load_config,
        mock_configure_logging,
        mock_job_scheduler,
        mock_create_event_source,
    ):
        mock_load_config.return_value = (AppConfig(), memory_env())

        mock_scheduler_instance = Mock()
        mock_job_scheduler.return_value = mock_scheduler_instance

        # Simulate immediate shutdown (so test doesn't hang)
        mock_scheduler_instance.start.side_effect = KeyboardInterrupt()

        exit_code = main()

        mock_create_event_source.assert_called_once()
        mock_scheduler_instance.start.assert_called_once()
        assert mock_signal.call_count == 2
        assert exit_code == 0

    @patch("movenotify.main.load_runtime_config")
    @patch("sys.argv", ["movenotify", "--config", "nonexistent.yaml"])
    def test_configuration_error(self, mock_load_config, capsys):
        mock_load_config.side_effect = ConfigurationError(
            "Config file not found",
            suggestions=["Create config.yaml"],
        )

        exit_code = main()

        assert exit_code == 1
        assert "Configuration Error" in capsys.readouterr().err

    @patch("movenotify.main.load_runtime_config")
    @patch("sys.argv", ["movenotify"])
    def test_keyboard_interrupt(self, mock_load_config):
        mock_load_config.side_effect = KeyboardInterrupt()

        assert main() == 0

    @patch("movenotify.main.init_database")
    @patch("movenotify.main.configure_logging")
    @patch("movenotify.main.load_runtime_config")
    @patch("sys.argv", ["movenotify", "--run-job", "cleanup"])
    def test_fatal_error(self, mock_load_config, mock_configure_logging, mock_init_db, capsys):
        mock_load_config.return_value = (AppConfig(), memory_env())
        mock_init_db.side_effect = RuntimeError("disk on fire")

        assert main() == 1
        assert "Fatal error: disk on fire" in capsys.readouterr().err

    @patch("movenotify.main.configure_logging")
    @patch("movenotify.main.load_runtime_config")
    @patch("sys.argv", ["movenotify", "--log-level", "DEBUG"])
    def test_log_level_override(self, mock_load_config, mock_configure_logging):
        """--log-level is passed to load_runtime_config."""
        mock_load_config.return_value = (AppConfig(), memory_env())
        mock_configure_logging.side_effect = Exception("exit early")

        main()

        call_args = mock_load_config.call_args[0]
        assert call_args[1] == "DEBUG"
