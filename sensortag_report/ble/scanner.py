"""
Bluetooth Low Energy discovery of TI SensorTags.
Provides the one-peripheral-per-call discovery primitive used by the
discovery loop and a windowed scan used by the CLI.
"""

import asyncio
from typing import Dict, Optional, Tuple

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ..utils.config import Config
from ..utils.logging import PerformanceMonitor
from .sensortag import SensorTag


class ScannerError(Exception):
    """Exception for scanner operation errors."""
    pass


# Advertised local names of CC2650 / CC2541 tags
SENSORTAG_NAMES = ("SensorTag", "Sensor Tag")


def is_sensortag(device: BLEDevice, advertisement_data: AdvertisementData) -> bool:
    """Check whether an advertisement comes from a SensorTag."""
    name = advertisement_data.local_name or device.name or ""
    return any(marker in name for marker in SENSORTAG_NAMES)


class SensorTagScanner:
    """
    Async SensorTag discovery.

    discover() keeps scanning in windows of ble_scan_timeout seconds until a
    tag advertises, so a call may take arbitrarily long while no tag is in
    range.
    """

    def __init__(self, config: Config, logger, performance_monitor: PerformanceMonitor):
        """
        Initialize the scanner.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.scan_timeout = config.ble_scan_timeout
        self.adapter = config.ble_adapter
        self.connect_timeout = config.connect_setup_max_dur

        self._scan_count = 0
        self._device_count = 0
        self._error_count = 0

    def _scanner_kwargs(self) -> dict:
        if self.adapter and self.adapter != "auto":
            return {"adapter": self.adapter}
        return {}

    async def _find_device(self) -> Optional[BLEDevice]:
        try:
            return await BleakScanner.find_device_by_filter(
                is_sensortag,
                timeout=self.scan_timeout,
                **self._scanner_kwargs()
            )
        except (BleakError, OSError) as e:
            self._error_count += 1
            self.performance_monitor.record_metric("ble_scan_errors", 1)
            raise ScannerError(f"BLE scan failed: {e}")
        finally:
            self._scan_count += 1

    async def discover(self) -> SensorTag:
        """
        Wait for the next advertising SensorTag.

        Returns:
            SensorTag: A fresh driver handle for the discovered tag

        Raises:
            ScannerError: If the BLE adapter cannot scan
        """
        while True:
            device = await self._find_device()
            if device is not None:
                break
            self.logger.debug(f"No SensorTag advertised within {self.scan_timeout}s, scanning again")

        self._device_count += 1
        self.performance_monitor.record_metric("ble_devices_discovered", 1)
        self.logger.debug(f"discovered: {device.address} ({device.name})")
        return SensorTag(
            device,
            self.logger,
            adapter=self.adapter,
            connect_timeout=self.connect_timeout
        )

    async def scan(self, duration: Optional[float] = None) -> Dict[str, Tuple[BLEDevice, AdvertisementData]]:
        """
        Collect every SensorTag advertising during one scan window.

        Args:
            duration: Scan duration in seconds (uses config default if None)

        Returns:
            Dict[str, Tuple[BLEDevice, AdvertisementData]]: Tags by address
        """
        scan_duration = duration or self.scan_timeout

        with self.performance_monitor.measure_time("ble_scan"):
            try:
                found = await BleakScanner.discover(
                    timeout=scan_duration,
                    return_adv=True,
                    **self._scanner_kwargs()
                )
            except (BleakError, OSError, asyncio.TimeoutError) as e:
                self._error_count += 1
                raise ScannerError(f"BLE scan failed: {e}")
            finally:
                self._scan_count += 1

        tags = {
            address: (device, advertisement_data)
            for address, (device, advertisement_data) in found.items()
            if is_sensortag(device, advertisement_data)
        }
        self.logger.info(f"BLE scan completed. Found {len(tags)} SensorTags")
        return tags

    def get_statistics(self) -> dict:
        """Get scanner statistics."""
        return {
            "scan_count": self._scan_count,
            "device_count": self._device_count,
            "error_count": self._error_count,
        }
