"""
Logging configuration for the SensorTag Report service.
Provides logging setup with multiple handlers and performance monitoring.
"""

import logging
import logging.handlers
import sys
import time
from collections import Counter, deque
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import colorlog


CONSOLE_FORMAT = '%(log_color)s%(asctime)s %(levelname)-8s %(name)s: %(message)s'
FILE_FORMAT = '%(asctime)s %(levelname)-8s %(name)s [%(process)d] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}

# Entries kept per metric series; the daemon runs unattended for weeks
METRIC_HISTORY = 1000


class ProductionLogger:
    """
    Logging setup for unattended deployment: coloured console output,
    a rotating main log, one rotating file per component and optional
    syslog forwarding of warnings.
    """

    COMPONENT_LOGGERS = {
        'sensortag.ble': ("ble.log", 'BLE'),
        'sensortag.session': ("sessions.log", 'SESSION'),
        'sensortag.influxdb': ("influxdb.log", 'InfluxDB'),
        'sensortag.performance': ("performance.log", 'PERF'),
    }

    def __init__(self,
                 app_name: str = "sensortag_report",
                 log_dir: str = "./logs",
                 log_level: str = "INFO",
                 max_file_size: int = 10 * 1024 * 1024,
                 backup_count: int = 5,
                 enable_console: bool = True,
                 enable_syslog: bool = False):

        level = logging.getLevelName(log_level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {log_level}")

        self.app_name = app_name
        self.log_dir = Path(log_dir)
        self.log_level = level
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console
        self.enable_syslog = enable_syslog

        self._root = logging.getLogger()
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._configure_root()
        self._configure_components()

    def _rotating_handler(self, file_name: str, fmt: str) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / file_name,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count
        )
        handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
        return handler

    def _configure_root(self):
        self._root.setLevel(self.log_level)
        self._root.handlers.clear()

        if self.enable_console:
            console_handler = colorlog.StreamHandler(sys.stdout)
            console_handler.setFormatter(colorlog.ColoredFormatter(
                CONSOLE_FORMAT, datefmt=DATE_FORMAT, log_colors=LOG_COLORS
            ))
            self._root.addHandler(console_handler)

        self._root.addHandler(self._rotating_handler(f"{self.app_name}.log", FILE_FORMAT))

        if self.enable_syslog:
            try:
                syslog_handler = logging.handlers.SysLogHandler(address='/dev/log')
            except OSError as e:
                self._root.warning(f"Could not set up syslog handler: {e}")
            else:
                syslog_handler.setLevel(logging.WARNING)
                syslog_handler.setFormatter(logging.Formatter(
                    f'{self.app_name}[%(process)d]: %(levelname)s %(name)s - %(message)s'
                ))
                self._root.addHandler(syslog_handler)

    def _configure_components(self):
        """Each component also writes to its own file; records still reach the root handlers."""
        for name, (file_name, tag) in self.COMPONENT_LOGGERS.items():
            component_logger = logging.getLogger(name)
            component_logger.handlers.clear()
            component_logger.addHandler(
                self._rotating_handler(file_name, f'%(asctime)s %(levelname)s {tag}: %(message)s')
            )

    def get_logger(self, name: str = None) -> logging.Logger:
        """Get a component logger, or the root logger when no name is given."""
        return logging.getLogger(name) if name else self._root

    def close(self):
        """Flush and detach every handler this instance installed."""
        for name in (None, *self.COMPONENT_LOGGERS):
            target = logging.getLogger(name)
            for handler in list(target.handlers):
                handler.close()
                target.removeHandler(handler)

    def debug(self, message: str, *args, **kwargs):
        self._root.debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self._root.info(message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self._root.warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self._root.error(message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs):
        self._root.critical(message, *args, **kwargs)


class PerformanceMonitor:
    """
    Runtime metrics for the session manager and the telemetry sink.

    Every series keeps the most recent METRIC_HISTORY entries; outcome
    counts are kept for the whole process lifetime.
    """

    SESSION_OUTCOMES = ('streaming', 'timeout', 'failed', 'disconnected', 'rejected', 'shutdown')

    def __init__(self, logger=None, history: int = METRIC_HISTORY):
        self.logger = logger or logging.getLogger('sensortag.performance')
        self.history = history
        self.metrics: Dict[str, deque] = {
            'session_outcomes': deque(maxlen=history),
            'influxdb_write_times': deque(maxlen=history),
            'memory_usage': deque(maxlen=history),
            'cpu_usage': deque(maxlen=history),
        }
        self.outcome_counts = Counter()
        self.write_counts = Counter()
        self.start_time = datetime.now()

    def _series(self, name: str) -> deque:
        if name not in self.metrics:
            self.metrics[name] = deque(maxlen=self.history)
        return self.metrics[name]

    def log_session_outcome(self, device_id: str, outcome: str, setup_duration: Optional[float] = None):
        """Record how a session setup or lifetime ended."""
        self.outcome_counts[outcome] += 1
        self.metrics['session_outcomes'].append({
            'device_id': device_id,
            'outcome': outcome,
            'setup_duration': setup_duration,
            'timestamp': datetime.now()
        })

        message = f"SESSION device={device_id} outcome={outcome}"
        if setup_duration is not None:
            message += f" setup={setup_duration:.2f}s"
        self.logger.info(message)

    def log_influxdb_write(self, duration: float, points_written: int, success: bool):
        self.write_counts['successful' if success else 'failed'] += 1
        self.metrics['influxdb_write_times'].append({
            'duration': duration,
            'points_written': points_written,
            'success': success,
            'timestamp': datetime.now()
        })
        self.logger.debug(f"INFLUXDB_WRITE duration={duration:.3f}s points={points_written} success={success}")

    def log_system_resources(self):
        """Sample memory and CPU usage of this process."""
        try:
            import psutil
        except ImportError:
            self.logger.warning("psutil not available for resource monitoring")
            return

        try:
            process = psutil.Process()
            memory_info = process.memory_info()
            cpu_percent = process.cpu_percent()
        except psutil.Error as e:
            self.logger.error(f"Failed to read system resources: {e}")
            return

        now = datetime.now()
        self.metrics['memory_usage'].append({'rss': memory_info.rss, 'vms': memory_info.vms, 'timestamp': now})
        self.metrics['cpu_usage'].append({'cpu_percent': cpu_percent, 'timestamp': now})

        self.logger.info(
            f"RESOURCES memory_rss={memory_info.rss / 1024 / 1024:.1f}MB "
            f"memory_vms={memory_info.vms / 1024 / 1024:.1f}MB cpu={cpu_percent:.1f}%"
        )

    def get_performance_summary(self) -> dict:
        """Summarize session outcomes and sink writes."""
        setup_times = [
            entry['setup_duration'] for entry in self.metrics['session_outcomes']
            if entry['outcome'] == 'streaming' and entry['setup_duration'] is not None
        ]
        write_times = [write['duration'] for write in self.metrics['influxdb_write_times'] if write['success']]

        sessions = {outcome: self.outcome_counts[outcome] for outcome in self.SESSION_OUTCOMES}
        sessions['avg_setup_duration'] = sum(setup_times) / len(setup_times) if setup_times else 0

        return {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'sessions': sessions,
            'influxdb_writes': {
                'total': sum(self.write_counts.values()),
                'successful': self.write_counts['successful'],
                'avg_duration': sum(write_times) / len(write_times) if write_times else 0,
            },
        }

    def record_metric(self, metric_name: str, value: float):
        self._series(metric_name).append({'value': value, 'timestamp': datetime.now()})
        self.logger.debug(f"METRIC {metric_name}={value}")

    @contextmanager
    def measure_time(self, operation_name: str):
        """Record how long the enclosed block takes as `<operation_name>_duration`."""
        start = time.monotonic()
        try:
            yield
        finally:
            duration = time.monotonic() - start
            self.record_metric(f"{operation_name}_duration", duration)
            self.logger.debug(f"TIMING {operation_name}={duration:.3f}s")

    def get_metrics(self) -> dict:
        """Snapshot of every metric series as lists."""
        return {name: list(series) for name, series in self.metrics.items()}


def setup_logging(config) -> ProductionLogger:
    """
    Set up logging for the SensorTag Report service from configuration.

    Args:
        config: Configuration instance

    Returns:
        ProductionLogger instance
    """
    return ProductionLogger(
        log_level=config.log_level,
        log_dir=str(config.log_dir),
        max_file_size=config.log_max_file_size,
        backup_count=config.log_backup_count,
        enable_console=config.log_enable_console,
        enable_syslog=config.log_enable_syslog
    )
