"""
SensorTag Report - continuous TI SensorTag capture into InfluxDB.

Discovers SensorTags over Bluetooth Low Energy, drives each one through
connection and capture setup, and writes every reported measurement to a
time-series database.
"""

__version__ = "1.0.0"
__author__ = "SensorTag Report Team"
__description__ = "TI SensorTag BLE reporter with InfluxDB storage"

# Package imports for convenience
from .utils.config import Config, ConfigurationError
from .utils.logging import ProductionLogger, PerformanceMonitor
from .ble.sensortag import Capability, CapabilityEvent, SensorTag
from .ble.scanner import SensorTagScanner
from .influxdb.client import InfluxDBTelemetrySink
from .influxdb.adapter import TelemetryAdapter
from .session import DiscoveryLoop, SessionState, SessionSupervisor

__all__ = [
    "Config",
    "ConfigurationError",
    "ProductionLogger",
    "PerformanceMonitor",
    "Capability",
    "CapabilityEvent",
    "SensorTag",
    "SensorTagScanner",
    "InfluxDBTelemetrySink",
    "TelemetryAdapter",
    "DiscoveryLoop",
    "SessionState",
    "SessionSupervisor",
]
