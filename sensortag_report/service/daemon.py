"""
Background daemon for the SensorTag Report service.
Wires configuration, logging, the telemetry sink and the session manager
together and runs them until a termination signal arrives.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..ble.scanner import SensorTagScanner
from ..influxdb.adapter import TelemetryAdapter
from ..influxdb.client import DatabaseInitError, InfluxDBTelemetrySink
from ..session.discovery import DiscoveryLoop
from ..session.supervisor import SessionSupervisor
from ..utils.config import Config, ConfigurationError
from ..utils.logging import PerformanceMonitor, ProductionLogger, setup_logging


EXIT_CONFIGURATION_ERROR = 1
EXIT_DATABASE_ERROR = 2


@dataclass
class DaemonStats:
    """Daemon statistics container."""
    start_time: datetime
    uptime_seconds: int = 0
    sessions_admitted: int = 0
    sessions_managed: int = 0
    samples_forwarded: int = 0
    samples_dropped: int = 0
    errors_count: int = 0
    memory_usage_mb: Optional[float] = None
    cpu_usage_percent: Optional[float] = None


class DaemonError(Exception):
    """Base exception for daemon operations."""
    pass


class SensorTagReportDaemon:
    """
    Unattended SensorTag reporter.

    Startup is strictly ordered: configuration, logging, database, and
    only then discovery. A database that cannot be provisioned stops the
    daemon before any device is admitted.
    """

    def __init__(self, config: Optional[Config] = None, logger=None,
                 scanner=None, sink=None, poll_interval: float = 1.0):
        """
        Initialize daemon.

        Args:
            config: Application configuration (loaded from the environment if None)
            logger: Logger instance (ProductionLogger built from config if None)
            scanner: Discovery primitive (SensorTagScanner if None)
            sink: Telemetry sink (InfluxDBTelemetrySink if None)
            poll_interval: Seconds between shutdown checks
        """
        self.config = config
        self.logger = logger
        self.scanner = scanner
        self.sink = sink
        self.poll_interval = poll_interval

        self.performance_monitor: Optional[PerformanceMonitor] = None
        self.adapter: Optional[TelemetryAdapter] = None
        self.supervisor: Optional[SessionSupervisor] = None
        self.discovery: Optional[DiscoveryLoop] = None

        self._running = False
        self._shutdown_requested = False
        self._stats_task: Optional[asyncio.Task] = None
        self._previous_handlers: Dict[int, Any] = {}
        self._stats = DaemonStats(start_time=datetime.now())

    def _component_logger(self, name: str):
        if isinstance(self.logger, ProductionLogger):
            return self.logger.get_logger(name)
        return self.logger

    def _initialize_components(self):
        """Load configuration and build every component."""
        if self.config is None:
            self.config = Config()
        self.config.validate_configuration()

        if self.logger is None:
            self.logger = setup_logging(self.config)
        self.performance_monitor = PerformanceMonitor(logging.getLogger('sensortag.performance'))

        if self.sink is None:
            self.sink = InfluxDBTelemetrySink(
                self.config,
                self._component_logger('sensortag.influxdb'),
                self.performance_monitor
            )
        if self.scanner is None:
            self.scanner = SensorTagScanner(
                self.config,
                self._component_logger('sensortag.ble'),
                self.performance_monitor
            )

        session_logger = self._component_logger('sensortag.session')
        self.adapter = TelemetryAdapter(self.sink, self._component_logger('sensortag.influxdb'))
        self.supervisor = SessionSupervisor(
            self.config,
            session_logger,
            self.performance_monitor,
            self.adapter
        )
        self.discovery = DiscoveryLoop(self.config, session_logger, self.scanner, self.supervisor)

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.logger.info(f"Received {signal_name}, initiating graceful shutdown...")
            self._shutdown_requested = True

        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, signal_handler)

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_loop_exception(self, loop, context):
        """Log faults nobody awaited and shut down cleanly."""
        exception = context.get("exception")
        message = context.get("message", "")
        self._stats.errors_count += 1
        if exception is not None:
            self.logger.critical(f"Unhandled error: {message} - {exception!r}")
        else:
            self.logger.critical(f"Unhandled error: {message}")
        self._shutdown_requested = True

    async def _statistics_loop(self):
        """Background loop logging resource usage and session statistics."""
        interval = self.config.performance_log_interval
        while self._running and not self._shutdown_requested:
            await asyncio.sleep(interval)
            try:
                self.performance_monitor.log_system_resources()
                self._update_stats()
                summary = self.performance_monitor.get_performance_summary()
                self.logger.info(
                    f"STATUS managed={self._stats.sessions_managed} "
                    f"admitted={self._stats.sessions_admitted} "
                    f"forwarded={self._stats.samples_forwarded} dropped={self._stats.samples_dropped} "
                    f"avg_setup={summary['sessions']['avg_setup_duration']:.2f}s"
                )
            except Exception as e:
                self.logger.error(f"Statistics loop error: {e}")

    def _update_stats(self):
        self._stats.uptime_seconds = int((datetime.now() - self._stats.start_time).total_seconds())
        if self.supervisor:
            supervisor_stats = self.supervisor.get_statistics()
            self._stats.sessions_admitted = supervisor_stats["admitted"]
            self._stats.sessions_managed = supervisor_stats["managed"]
        if self.adapter:
            self._stats.samples_forwarded = self.adapter.samples_forwarded
            self._stats.samples_dropped = self.adapter.samples_dropped
        metrics = self.performance_monitor.get_metrics() if self.performance_monitor else {}
        if metrics.get('memory_usage'):
            self._stats.memory_usage_mb = metrics['memory_usage'][-1]['rss'] / 1024 / 1024
        if metrics.get('cpu_usage'):
            self._stats.cpu_usage_percent = metrics['cpu_usage'][-1]['cpu_percent']

    def request_shutdown(self):
        self._shutdown_requested = True

    def get_status(self) -> Dict[str, Any]:
        """Get current daemon status."""
        self._update_stats()
        return {
            "running": self._running,
            "shutdown_requested": self._shutdown_requested,
            "stats": asdict(self._stats),
            "sessions": self.supervisor.get_statistics() if self.supervisor else {},
            "sink": self.sink.get_statistics() if self.sink else {},
            "performance": self.performance_monitor.get_performance_summary() if self.performance_monitor else {},
        }

    async def start(self):
        """
        Start the daemon and run until shutdown is requested.

        Raises:
            ConfigurationError: If the configuration is incomplete
            DatabaseInitError: If the database cannot be provisioned
            DaemonError: If the daemon is already running
        """
        if self._running:
            raise DaemonError("Daemon is already running")

        self._initialize_components()
        self.logger.info("Starting SensorTag Report Daemon...")

        try:
            await self.sink.ensure_database(self.config.db_name)
        except DatabaseInitError as e:
            self.logger.error(f"{e}")
            self._close_sink()
            raise

        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)
        self._setup_signal_handlers()
        self._running = True

        try:
            self.discovery.start()
            self._stats_task = asyncio.create_task(self._statistics_loop())
            self.logger.info("SensorTag Report Daemon started successfully")

            while self._running and not self._shutdown_requested:
                await asyncio.sleep(self.poll_interval)
        finally:
            await self.stop()
            loop.set_exception_handler(None)

    async def stop(self):
        """Stop the daemon gracefully."""
        if not self._running:
            return

        self.logger.info("Stopping SensorTag Report Daemon...")
        self._running = False

        if self._stats_task and not self._stats_task.done():
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass

        if self.discovery:
            await self.discovery.stop()

        if self.supervisor:
            try:
                await self.supervisor.shutdown()
            except Exception as e:
                self.logger.error(f"Error stopping sessions: {e}")

        self._close_sink()
        self._restore_signal_handlers()
        self.logger.info("SensorTag Report Daemon stopped")

    def _close_sink(self):
        if self.sink:
            try:
                self.sink.close()
            except Exception as e:
                self.logger.warning(f"Error closing database client: {e}")


async def run_daemon(daemon: Optional[SensorTagReportDaemon] = None):
    """Run the daemon from command line; exits 1 on bad configuration, 2 when the database is unusable."""
    daemon = daemon or SensorTagReportDaemon()
    try:
        await daemon.start()
    except ConfigurationError as e:
        print(f"ERROR : {e}")
        sys.exit(EXIT_CONFIGURATION_ERROR)
    except DatabaseInitError as e:
        print(f"ERROR : {e}")
        sys.exit(EXIT_DATABASE_ERROR)
    except DaemonError as e:
        print(f"Daemon error: {e}")
        sys.exit(EXIT_CONFIGURATION_ERROR)


if __name__ == "__main__":
    asyncio.run(run_daemon())
