"""
Pytest configuration and shared fixtures for SensorTag Report tests.
Provides common test fixtures, mock objects, and test utilities.
"""

import pytest
from pathlib import Path
from unittest.mock import Mock, MagicMock

# Import the modules we're testing
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from sensortag_report.utils.config import Config
from sensortag_report.utils.logging import ProductionLogger, PerformanceMonitor
from sensortag_report.influxdb.adapter import TelemetryAdapter
from sensortag_report.session.sequencer import CaptureSequencer
from sensortag_report.session.supervisor import SessionSupervisor
from tests.mocks.mock_sensortag import FakeSensorTag, FakeSink


@pytest.fixture
def mock_config():
    """Create a mock configuration with short timings for testing."""
    config = Mock(spec=Config)

    # Database configuration
    config.db_name = "st_report"
    config.db_user = "reporter"
    config.db_pass = "secret"
    config.db_host = "localhost"
    config.db_port = 8086
    config.db_org = "-"
    config.db_timeout = 1
    config.db_connect_tries = 2
    config.db_connect_retry_delay = 0.01

    # BLE configuration
    config.ble_adapter = "auto"
    config.ble_discovery_pause = 0.01
    config.ble_scan_timeout = 0.1

    # Session timing
    config.connect_setup_max_dur = 0.5
    config.wait_after_conn_dur = 0.0
    config.connect_config_margin = 0.1
    config.setup_deadline = 0.6

    # Logging configuration
    config.log_level = "DEBUG"
    config.log_dir = Path("./test_logs")
    config.log_max_file_size = 1024 * 1024  # 1MB
    config.log_backup_count = 2
    config.log_enable_console = False  # Disable console logging in tests
    config.log_enable_syslog = False

    # Performance monitoring
    config.performance_log_interval = 60

    return config


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock(spec=ProductionLogger)
    logger.debug = Mock()
    logger.info = Mock()
    logger.warning = Mock()
    logger.error = Mock()
    logger.critical = Mock()
    return logger


@pytest.fixture
def mock_performance_monitor():
    """Create a mock performance monitor for testing."""
    monitor = Mock(spec=PerformanceMonitor)
    monitor.record_metric = Mock()
    monitor.log_session_outcome = Mock()
    monitor.log_influxdb_write = Mock()
    monitor.measure_time = Mock()
    monitor.get_metrics = Mock(return_value={})

    # Mock the context manager for measure_time
    mock_context = MagicMock()
    mock_context.__enter__ = Mock(return_value=mock_context)
    mock_context.__exit__ = Mock(return_value=None)
    monitor.measure_time.return_value = mock_context

    return monitor


@pytest.fixture
def fake_sink():
    """In-memory telemetry sink."""
    return FakeSink()


@pytest.fixture
def adapter(fake_sink, mock_logger):
    """Telemetry adapter writing to the in-memory sink."""
    return TelemetryAdapter(fake_sink, mock_logger)


@pytest.fixture
def supervisor(mock_config, mock_logger, mock_performance_monitor, adapter):
    """Session supervisor with short timings."""
    return SessionSupervisor(
        mock_config,
        mock_logger,
        mock_performance_monitor,
        adapter,
        sequencer=CaptureSequencer(mock_config, mock_logger)
    )


@pytest.fixture
def make_tag():
    """Factory for scripted SensorTag doubles with distinct addresses."""
    counter = {"n": 0}

    def factory(address=None, **behaviour):
        if address is None:
            counter["n"] += 1
            address = f"54:6C:0E:52:F3:{counter['n']:02X}"
        return FakeSensorTag(address, **behaviour)

    return factory
