"""
Integration tests for daemon startup and shutdown.
Tests fatal startup exits, end-to-end streaming with fake devices, and
cleanup on termination signals and unhandled faults.
"""

import asyncio
import signal
import time

import pytest
from unittest.mock import MagicMock, patch

from sensortag_report.ble.sensortag import Capability
from sensortag_report.influxdb.client import InfluxDBTelemetrySink
from sensortag_report.service.daemon import SensorTagReportDaemon, run_daemon
from sensortag_report.session.models import SessionState
from sensortag_report.utils.config import ConfigurationError
from tests.mocks.mock_sensortag import FakeScanner, FakeSensorTag, FakeSink


async def wait_until(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def is_streaming(daemon, tag) -> bool:
    if daemon.supervisor is None:
        return False
    session = daemon.supervisor.get_session(tag.uuid)
    return session is not None and session.state is SessionState.STREAMING and "telemetry" in session.bindings


class TestFatalStartup:
    """Test process-fatal startup failures."""

    @pytest.mark.asyncio
    async def test_unreachable_database_exits_2_without_admission(
            self, mock_config, mock_logger, capsys):
        """The database stays unreachable for every connection attempt."""
        scanner = FakeScanner([FakeSensorTag()])

        with patch("sensortag_report.influxdb.client.InfluxDBClient") as client_cls:
            client = MagicMock()
            client.ping.return_value = False
            client_cls.return_value = client

            sink = InfluxDBTelemetrySink(mock_config, mock_logger, MagicMock())
            daemon = SensorTagReportDaemon(
                config=mock_config,
                logger=mock_logger,
                scanner=scanner,
                sink=sink,
                poll_interval=0.01
            )

            with pytest.raises(SystemExit) as exc_info:
                await run_daemon(daemon)

        assert exc_info.value.code == 2
        assert client.ping.call_count == mock_config.db_connect_tries
        assert scanner.calls == 0
        assert daemon.supervisor.get_statistics()["admitted"] == 0
        client.close.assert_called_once()
        assert "ERROR : could not create db st_report" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_missing_credentials_exit_1(self, mock_config, mock_logger, capsys):
        mock_config.validate_configuration.side_effect = ConfigurationError("DB_USER variable must be set")
        sink = FakeSink()
        daemon = SensorTagReportDaemon(config=mock_config, logger=mock_logger, scanner=FakeScanner(), sink=sink)

        with pytest.raises(SystemExit) as exc_info:
            await run_daemon(daemon)

        assert exc_info.value.code == 1
        assert sink.databases == []
        assert "ERROR : DB_USER variable must be set" in capsys.readouterr().out


class TestDaemonLifecycle:
    """Test running and stopping the daemon with fake devices."""

    def make_daemon(self, mock_config, mock_logger, tags, sink):
        return SensorTagReportDaemon(
            config=mock_config,
            logger=mock_logger,
            scanner=FakeScanner(tags),
            sink=sink,
            poll_interval=0.01
        )

    @pytest.mark.asyncio
    async def test_streams_until_signal_then_disconnects_all(self, mock_config, mock_logger):
        tags = [FakeSensorTag("54:6C:0E:52:F3:01"), FakeSensorTag("54:6C:0E:52:F3:02")]
        sink = FakeSink()
        daemon = self.make_daemon(mock_config, mock_logger, tags, sink)
        previous_handler = signal.getsignal(signal.SIGTERM)

        run_task = asyncio.create_task(daemon.start())
        await wait_until(lambda: all(is_streaming(daemon, tag) for tag in tags))

        tags[0].emit(Capability.PRESSURE, 1009.5)
        await daemon.adapter.drain()
        assert f"pressure_TI_ST_{tags[0].uuid}" in sink.series
        assert sink.databases == ["st_report"]

        # Deliver SIGTERM through the installed handler
        signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
        await asyncio.wait_for(run_task, 2.0)

        assert all(("disconnect",) in tag.ops for tag in tags)
        assert daemon.supervisor.managed_ids() == []
        assert sink.closed
        assert signal.getsignal(signal.SIGTERM) is previous_handler

    @pytest.mark.asyncio
    async def test_unhandled_fault_triggers_cleanup(self, mock_config, mock_logger):
        tag = FakeSensorTag("54:6C:0E:52:F3:03")
        sink = FakeSink()
        daemon = self.make_daemon(mock_config, mock_logger, [tag], sink)

        run_task = asyncio.create_task(daemon.start())
        await wait_until(lambda: is_streaming(daemon, tag))

        asyncio.get_running_loop().call_exception_handler({
            "message": "Task exception was never retrieved",
            "exception": RuntimeError("boom"),
        })
        await asyncio.wait_for(run_task, 2.0)

        mock_logger.critical.assert_called_once()
        assert ("disconnect",) in tag.ops
        assert sink.closed

    @pytest.mark.asyncio
    async def test_status_reports_components(self, mock_config, mock_logger):
        sink = FakeSink()
        daemon = self.make_daemon(mock_config, mock_logger, [], sink)

        run_task = asyncio.create_task(daemon.start())
        await wait_until(lambda: daemon.get_status()["running"] if daemon.supervisor else False)

        status = daemon.get_status()
        assert status["sessions"]["managed"] == 0
        assert status["sink"] == {"points_written": 0}

        daemon.request_shutdown()
        await asyncio.wait_for(run_task, 2.0)
        assert daemon.get_status()["running"] is False
