"""
Bluetooth Low Energy driver for TI CC2650 SensorTags.
Wraps a bleak client with the SensorTag GATT profile: capability enable,
reporting period and notification control, value decoding and
disconnect notification.
"""

import asyncio
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from bleak import BleakClient
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError


class Capability(Enum):
    """Measurable quantities (and hardware blocks) exposed by a SensorTag."""
    HUMIDITY = "humidity"
    PRESSURE = "barometricPressure"
    IR_TEMPERATURE = "irTemperature"
    LUX = "luxometer"
    MOTION_WAKE = "wom"
    ACCELEROMETER = "accelerometer"
    BATTERY = "batteryLevel"


@dataclass(frozen=True)
class CapabilityEvent:
    """One decoded notification: the reporting capability and its values."""
    capability: Capability
    values: Tuple[float, ...]


class SensorTagError(Exception):
    """Base exception for SensorTag driver operations."""
    pass


class SensorTagConnectError(SensorTagError):
    """Exception for connection establishment errors."""
    pass


class SensorTagOperationError(SensorTagError):
    """Exception for GATT operation errors (rejected writes, reads, notifications)."""
    pass


def ti_uuid(short: int) -> str:
    """Expand a 16-bit TI SensorTag attribute id to its 128-bit UUID."""
    return f"f000{short:04x}-0451-4000-b000-000000000000"


BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"

# Period characteristic range accepted by the report firmware (1s resolution)
PERIOD_MIN = 1
PERIOD_MAX = 255

# Movement sensor configuration bits (MPU9250)
MOVEMENT_ACCEL_AXES = 0x0038
MOVEMENT_WAKE_ON_MOTION = 0x0080
ACCELEROMETER_RANGE_G = 2


def decode_humidity(data: bytes) -> Tuple[float, float]:
    """HDC1000: (temperature degC, relative humidity %)."""
    raw_temp, raw_hum = struct.unpack('<HH', data[:4])
    temperature = raw_temp / 65536.0 * 165.0 - 40.0
    humidity = (raw_hum & ~0x0003) / 65536.0 * 100.0
    return temperature, humidity


def decode_pressure(data: bytes) -> Tuple[float]:
    """BMP280: (pressure hPa,). The first three bytes carry the die temperature."""
    raw_pressure = int.from_bytes(data[3:6], 'little')
    return (raw_pressure / 100.0,)


def decode_ir_temperature(data: bytes) -> Tuple[float, float]:
    """TMP007: (object temperature degC, ambient temperature degC)."""
    raw_object, raw_ambient = struct.unpack('<hh', data[:4])
    return (raw_object >> 2) * 0.03125, (raw_ambient >> 2) * 0.03125


def decode_lux(data: bytes) -> Tuple[float]:
    """OPT3001: (illuminance lux,)."""
    raw = struct.unpack('<H', data[:2])[0]
    mantissa = raw & 0x0FFF
    exponent = (raw & 0xF000) >> 12
    return (mantissa * 0.01 * (2 ** exponent),)


def decode_accelerometer(data: bytes) -> Tuple[float, float, float]:
    """MPU9250: (x, y, z) in G. Gyroscope and magnetometer words are ignored."""
    raw = struct.unpack('<9h', data[:18])
    scale = 32768.0 / ACCELEROMETER_RANGE_G
    return raw[3] / scale, raw[4] / scale, raw[5] / scale


def decode_battery(data: bytes) -> Tuple[float]:
    """Battery service: (level %,)."""
    return (float(data[0]),)


@dataclass(frozen=True)
class GattProfile:
    """Characteristics backing one capability."""
    data_uuid: Optional[str]
    config_uuid: Optional[str] = None
    period_uuid: Optional[str] = None
    decoder: Optional[Callable[[bytes], Tuple[float, ...]]] = None


GATT_PROFILES: Dict[Capability, GattProfile] = {
    Capability.IR_TEMPERATURE: GattProfile(ti_uuid(0xAA01), ti_uuid(0xAA02), ti_uuid(0xAA03), decode_ir_temperature),
    Capability.HUMIDITY: GattProfile(ti_uuid(0xAA21), ti_uuid(0xAA22), ti_uuid(0xAA23), decode_humidity),
    Capability.PRESSURE: GattProfile(ti_uuid(0xAA41), ti_uuid(0xAA42), ti_uuid(0xAA44), decode_pressure),
    Capability.LUX: GattProfile(ti_uuid(0xAA71), ti_uuid(0xAA72), ti_uuid(0xAA73), decode_lux),
    Capability.ACCELEROMETER: GattProfile(ti_uuid(0xAA81), ti_uuid(0xAA82), ti_uuid(0xAA83), decode_accelerometer),
    Capability.MOTION_WAKE: GattProfile(None, ti_uuid(0xAA82)),
    Capability.BATTERY: GattProfile(BATTERY_LEVEL_UUID, decoder=decode_battery),
}

# Capabilities sharing the movement configuration word
MOVEMENT_BITS = {
    Capability.ACCELEROMETER: MOVEMENT_ACCEL_AXES,
    Capability.MOTION_WAKE: MOVEMENT_WAKE_ON_MOTION,
}


def clamp_period(period: int) -> int:
    """Clamp a period to the range the firmware accepts."""
    return max(PERIOD_MIN, min(PERIOD_MAX, int(period)))


class SensorTag:
    """
    Driver handle for one physical SensorTag.

    Events:
    - capability events: every decoded notification is passed to each event
      listener as a CapabilityEvent
    - disconnect: each disconnect listener is called with this handle when
      the BLE link drops
    """

    DEVICE_KIND = "TI_ST"

    def __init__(self, device: BLEDevice, logger, adapter: Optional[str] = None,
                 connect_timeout: float = 40.0):
        """
        Initialize the driver handle.

        Args:
            device: Discovered BLE device
            logger: Logger instance
            adapter: BLE adapter name (None selects the default adapter)
            connect_timeout: Timeout handed to the BLE stack for connecting
        """
        self.device = device
        self.address = device.address
        self.uuid = self.address.replace(":", "").replace("-", "").lower()
        self.logger = logger
        self.connect_timeout = connect_timeout

        client_kwargs = {"disconnected_callback": self._on_disconnected}
        if adapter and adapter != "auto":
            client_kwargs["adapter"] = adapter
        self._client = BleakClient(device, **client_kwargs)

        self._movement_config = 0
        self._event_listeners: List[Callable[[CapabilityEvent], None]] = []
        self._disconnect_listeners: List[Callable[["SensorTag"], None]] = []

    def __str__(self):
        return f"SensorTag({self.address})"

    @property
    def is_connected(self) -> bool:
        """Transport state reported by the BLE stack."""
        return self._client.is_connected

    # Listener management

    def add_event_listener(self, listener: Callable[[CapabilityEvent], None]):
        if listener not in self._event_listeners:
            self._event_listeners.append(listener)

    def remove_event_listener(self, listener: Callable[[CapabilityEvent], None]):
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def add_disconnect_listener(self, listener: Callable[["SensorTag"], None]):
        if listener not in self._disconnect_listeners:
            self._disconnect_listeners.append(listener)

    def remove_disconnect_listener(self, listener: Callable[["SensorTag"], None]):
        if listener in self._disconnect_listeners:
            self._disconnect_listeners.remove(listener)

    def _on_disconnected(self, client: BleakClient):
        self.logger.debug(f"{self} link lost")
        self._movement_config = 0
        for listener in list(self._disconnect_listeners):
            try:
                listener(self)
            except Exception as e:
                self.logger.error(f"Error in disconnect listener for {self}: {e}")

    def _dispatch(self, event: CapabilityEvent):
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f"Error in event listener for {self}: {e}")

    def _notification_handler(self, capability: Capability, decoder: Callable[[bytes], Tuple[float, ...]]):
        def handler(sender, data: bytearray):
            try:
                values = decoder(bytes(data))
            except (struct.error, IndexError) as e:
                self.logger.warning(f"{self} malformed {capability.value} notification: {e}")
                return
            self._dispatch(CapabilityEvent(capability, values))
        return handler

    # GATT operations

    async def connect_and_set_up(self):
        """Connect and resolve the GATT services."""
        try:
            await self._client.connect(timeout=self.connect_timeout)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise SensorTagConnectError(f"{self} connect failed: {e}")

    async def _write(self, uuid: str, payload: bytes, what: str):
        try:
            await self._client.write_gatt_char(uuid, payload, response=True)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise SensorTagOperationError(f"{self} {what} rejected: {e}")

    def _profile(self, capability: Capability) -> GattProfile:
        return GATT_PROFILES[capability]

    async def enable(self, capability: Capability):
        """Switch the sensor block behind a capability on."""
        profile = self._profile(capability)
        if profile.config_uuid is None:
            raise SensorTagOperationError(f"{capability.value} cannot be enabled")

        if capability in MOVEMENT_BITS:
            config = self._movement_config | MOVEMENT_BITS[capability]
            # Accelerometer range lives in bits 8-9; 0 selects 2G
            await self._write(profile.config_uuid, struct.pack('<H', config), f"enable {capability.value}")
            self._movement_config = config
        else:
            await self._write(profile.config_uuid, b'\x01', f"enable {capability.value}")

    async def set_period(self, capability: Capability, period: int):
        """Set the reporting period in firmware ticks; clamped to the accepted range."""
        profile = self._profile(capability)
        if profile.period_uuid is None:
            raise SensorTagOperationError(f"{capability.value} has no reporting period")

        ticks = clamp_period(period)
        if ticks != period:
            self.logger.debug(f"{self} {capability.value} period {period} clamped to {ticks}")
        await self._write(profile.period_uuid, struct.pack('<B', ticks), f"set {capability.value} period")

    async def notify(self, capability: Capability):
        """Enable notifications for a capability's data characteristic."""
        profile = self._profile(capability)
        if profile.data_uuid is None or profile.decoder is None:
            raise SensorTagOperationError(f"{capability.value} does not notify")

        try:
            await self._client.start_notify(
                profile.data_uuid,
                self._notification_handler(capability, profile.decoder)
            )
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise SensorTagOperationError(f"{self} notify {capability.value} rejected: {e}")

    async def read_battery_level(self) -> int:
        """Read the battery level (percent) synchronously."""
        try:
            data = await self._client.read_gatt_char(BATTERY_LEVEL_UUID)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise SensorTagOperationError(f"{self} battery read failed: {e}")
        if not data:
            raise SensorTagOperationError(f"{self} battery read returned no data")
        return int(data[0])

    async def disconnect(self):
        """Disconnect from the tag."""
        try:
            await self._client.disconnect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise SensorTagOperationError(f"{self} disconnect failed: {e}")
