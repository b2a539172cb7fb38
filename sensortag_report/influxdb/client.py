"""
InfluxDB telemetry sink for SensorTag samples.
Handles database provisioning with bounded retries and per-sample writes.
"""

import asyncio
import functools
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from ..utils.config import Config
from ..utils.logging import PerformanceMonitor


# Org name under which InfluxDB 1.8 serves its v2 compatible endpoints
V1_COMPAT_ORG = "-"


@dataclass
class WriteStats:
    """Statistics for sink write operations."""
    points_written: int = 0
    points_failed: int = 0
    last_write_time: Optional[datetime] = None
    total_write_time: float = 0.0


class TelemetrySinkError(Exception):
    """Base exception for telemetry sink operations."""
    pass


class DatabaseInitError(TelemetrySinkError):
    """Exception raised when the database cannot be provisioned at startup."""
    pass


class SinkWriteError(TelemetrySinkError):
    """Exception for write operation errors."""
    pass


class InfluxDBTelemetrySink:
    """
    Telemetry sink writing one point per sample to InfluxDB.

    Every sample is its own series (measurement) with a single ``value``
    field, so writes from different device sessions are independent and
    may run concurrently. The blocking client calls run in the default
    executor so the event loop never stalls on the database.
    """

    def __init__(self, config: Config, logger, performance_monitor: PerformanceMonitor):
        """
        Initialize the sink.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.url = f"http://{config.db_host}:{config.db_port}"
        self.database = config.db_name
        self.org = config.db_org
        self.username = config.db_user
        self.password = config.db_pass
        self.timeout = config.db_timeout * 1000  # Convert to milliseconds
        self.v1_compat = self.org == V1_COMPAT_ORG

        # Startup retry policy
        self.connect_tries = config.db_connect_tries
        self.retry_delay = config.db_connect_retry_delay

        self._client: Optional[InfluxDBClient] = None
        self._write_api = None
        self._stats = WriteStats()

        self.logger.info(f"InfluxDBTelemetrySink initialized for {self.url} (db {self.database})")

    def _get_client(self) -> InfluxDBClient:
        if self._client is None:
            if self.v1_compat:
                # 1.8 takes "user:password" as the token
                self._client = InfluxDBClient(
                    url=self.url,
                    token=f"{self.username}:{self.password}",
                    org=self.org,
                    timeout=self.timeout
                )
            else:
                self._client = InfluxDBClient(
                    url=self.url,
                    username=self.username,
                    password=self.password,
                    org=self.org,
                    timeout=self.timeout
                )
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)
        return self._client

    async def _run_blocking(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def _create_database(self, name: str):
        """
        Check db connection and existence, create it when missing.

        InfluxDB 1.8 has no buckets API: there the server is only checked
        for reachability and the database must already exist.
        """
        client = self._get_client()
        if self.v1_compat:
            if not client.ping():
                raise ConnectionError(f"{self.url} is not reachable")
            self.logger.info(f"db {name} is managed by the InfluxDB 1.8 server - creation skipped")
            return

        buckets_api = client.buckets_api()
        if buckets_api.find_bucket_by_name(name) is None:
            self.logger.info(f"db {name} does not exist - create it")
            buckets_api.create_bucket(bucket_name=name, org=self.org)
        else:
            self.logger.debug(f"db {name} exists")

    async def ensure_database(self, name: Optional[str] = None) -> bool:
        """
        Make sure the target database exists. Idempotent.

        Args:
            name: Database name (defaults to the configured one)

        Returns:
            bool: True once the database exists

        Raises:
            DatabaseInitError: If every attempt failed
        """
        name = name or self.database

        for attempt in range(self.connect_tries):
            try:
                self.logger.debug(f"create db : {name}")
                await self._run_blocking(self._create_database, name)
                return True
            except Exception as e:
                remaining = self.connect_tries - attempt - 1
                if remaining > 0:
                    self.logger.warning(f"unable to create db - try {remaining} time(s) again - {e}")
                    await asyncio.sleep(self.retry_delay)
                else:
                    raise DatabaseInitError(f"could not create db {name} err - {e}")

        return False

    async def write(self, series: str, timestamp: datetime, value: Union[float, int]) -> bool:
        """
        Write one sample.

        Args:
            series: Series (measurement) name
            timestamp: Sample time
            value: Numeric value

        Returns:
            bool: True if write successful

        Raises:
            SinkWriteError: If the database rejected the write
        """
        point = Point(series).field("value", float(value)).time(timestamp, WritePrecision.MS)
        start_time = time.time()

        try:
            self._get_client()
            await self._run_blocking(
                self._write_api.write,
                bucket=self.database,
                org=self.org,
                record=point
            )
        except Exception as e:
            duration = time.time() - start_time
            self._stats.points_failed += 1
            self.performance_monitor.log_influxdb_write(duration, 0, False)
            raise SinkWriteError(f"{series}: {e}")

        duration = time.time() - start_time
        self._stats.points_written += 1
        self._stats.last_write_time = datetime.now(timezone.utc)
        self._stats.total_write_time += duration
        self.performance_monitor.log_influxdb_write(duration, 1, True)
        return True

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get sink statistics.

        Returns:
            Dict[str, Any]: Sink statistics
        """
        return {
            "url": self.url,
            "database": self.database,
            "points_written": self._stats.points_written,
            "points_failed": self._stats.points_failed,
            "last_write_time": self._stats.last_write_time,
            "average_write_time": (
                self._stats.total_write_time / self._stats.points_written
                if self._stats.points_written > 0 else 0
            ),
        }

    def close(self):
        """Release the database client."""
        if self._client:
            self._client.close()
            self._client = None
            self._write_api = None
            self.logger.info("Disconnected from InfluxDB")
