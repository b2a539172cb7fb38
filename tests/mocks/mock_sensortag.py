"""
Scripted SensorTag doubles for testing session handling without hardware.
Provides a fake driver handle, a queue-fed discovery primitive and an
in-memory telemetry sink.
"""

import asyncio
from typing import Iterable, List, Optional, Set, Tuple

from sensortag_report.ble.sensortag import (
    CapabilityEvent,
    SensorTagConnectError,
    SensorTagOperationError,
)
from sensortag_report.influxdb.client import SinkWriteError


class FakeSensorTag:
    """
    Driver handle double that records every operation in `ops`.

    Behaviour is scripted through constructor arguments:
    - connect_delay: seconds connect_and_set_up() takes
    - hang_connect: connect_and_set_up() never returns; the transport
      reports `connected_while_hanging` meanwhile
    - fail_connect: connect_and_set_up() raises
    - op_delay: seconds every configuration operation takes
    - fail_on: (operation, capability) that is rejected
    - disconnect_on: (operation, capability) during which the link drops
    - disconnect_error: exception raised by disconnect()
    """

    DEVICE_KIND = "TI_ST"

    def __init__(self, address: str = "54:6C:0E:52:F3:01",
                 connect_delay: float = 0.0,
                 hang_connect: bool = False,
                 connected_while_hanging: bool = True,
                 fail_connect: bool = False,
                 op_delay: float = 0.0,
                 fail_on: Optional[Tuple] = None,
                 disconnect_on: Optional[Tuple] = None,
                 battery_level: int = 87,
                 disconnect_error: Optional[Exception] = None):
        self.address = address
        self.uuid = address.replace(":", "").lower()
        self.connect_delay = connect_delay
        self.hang_connect = hang_connect
        self.connected_while_hanging = connected_while_hanging
        self.fail_connect = fail_connect
        self.op_delay = op_delay
        self.fail_on = fail_on
        self.disconnect_on = disconnect_on
        self.battery_level = battery_level
        self.disconnect_error = disconnect_error

        self.ops: List[Tuple] = []
        self._connected = False
        self._event_listeners = []
        self._disconnect_listeners = []

    def __str__(self):
        return f"FakeSensorTag({self.address})"

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def config_ops(self) -> List[Tuple]:
        """Operations issued after connecting, excluding disconnects."""
        return [op for op in self.ops if op[0] not in ("connect", "disconnect")]

    @property
    def listener_count(self) -> int:
        return len(self._event_listeners) + len(self._disconnect_listeners)

    def add_event_listener(self, listener):
        if listener not in self._event_listeners:
            self._event_listeners.append(listener)

    def remove_event_listener(self, listener):
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def add_disconnect_listener(self, listener):
        if listener not in self._disconnect_listeners:
            self._disconnect_listeners.append(listener)

    def remove_disconnect_listener(self, listener):
        if listener in self._disconnect_listeners:
            self._disconnect_listeners.remove(listener)

    # Test controls

    def trigger_disconnect(self):
        """Drop the link and notify disconnect listeners."""
        self._connected = False
        for listener in list(self._disconnect_listeners):
            listener(self)

    def emit(self, capability, *values):
        """Deliver a capability notification."""
        event = CapabilityEvent(capability, tuple(values))
        for listener in list(self._event_listeners):
            listener(event)

    # Driver operations

    async def connect_and_set_up(self):
        self.ops.append(("connect",))
        if self.hang_connect:
            self._connected = self.connected_while_hanging
            await asyncio.Event().wait()
        await asyncio.sleep(self.connect_delay)
        if self.fail_connect:
            raise SensorTagConnectError(f"{self} connect failed")
        self._connected = True

    async def _operation(self, *op):
        self.ops.append(op)
        await asyncio.sleep(self.op_delay)
        key = op[:2]
        if self.disconnect_on == key:
            self.trigger_disconnect()
            raise SensorTagOperationError(f"{self} link lost during {op[0]}")
        if self.fail_on == key:
            raise SensorTagOperationError(f"{self} {op[0]} rejected")

    async def enable(self, capability):
        await self._operation("enable", capability)

    async def set_period(self, capability, period):
        await self._operation("set_period", capability, period)

    async def notify(self, capability):
        await self._operation("notify", capability)

    async def read_battery_level(self) -> int:
        await self._operation("read_battery", None)
        return self.battery_level

    async def disconnect(self):
        self.ops.append(("disconnect",))
        await asyncio.sleep(0)
        if self.disconnect_error is not None:
            raise self.disconnect_error
        was_connected = self._connected
        self._connected = False
        if was_connected:
            for listener in list(self._disconnect_listeners):
                listener(self)


class FakeScanner:
    """Discovery primitive double yielding queued handles, then blocking."""

    def __init__(self, handles: Iterable = ()):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.calls = 0
        for handle in handles:
            self.queue.put_nowait(handle)

    def add(self, item):
        """Queue a handle, or an exception to raise from discover()."""
        self.queue.put_nowait(item)

    async def discover(self):
        self.calls += 1
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item


class FakeSink:
    """In-memory telemetry sink; writes to series in `fail_series` are rejected."""

    def __init__(self, fail_series: Optional[Set[str]] = None, write_delay: float = 0.0):
        self.fail_series = set(fail_series or ())
        self.write_delay = write_delay
        self.writes: List[Tuple] = []
        self.attempts: List[str] = []
        self.closed = False
        self.databases: List[str] = []

    async def ensure_database(self, name=None):
        self.databases.append(name)
        return True

    async def write(self, series, timestamp, value):
        self.attempts.append(series)
        await asyncio.sleep(self.write_delay)
        if series in self.fail_series:
            raise SinkWriteError(f"{series}: write rejected")
        self.writes.append((series, timestamp, value))
        return True

    @property
    def series(self) -> List[str]:
        return [write[0] for write in self.writes]

    def get_statistics(self):
        return {"points_written": len(self.writes)}

    def close(self):
        self.closed = True
