"""
Translation of SensorTag capability events into telemetry samples.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from ..ble.sensortag import Capability, CapabilityEvent, SensorTag
from .client import TelemetrySinkError


# Metric name per event value; None marks a value that is not stored
METRIC_FIELDS: Dict[Capability, Tuple[Optional[str], ...]] = {
    Capability.HUMIDITY: ("temperature", "humidity"),
    Capability.PRESSURE: ("pressure",),
    Capability.IR_TEMPERATURE: (None, "ambient_temperature"),
    Capability.LUX: ("lux",),
    Capability.ACCELEROMETER: ("accelX", "accelY", "accelZ"),
    Capability.BATTERY: ("battery",),
}


def series_name(metric: str, device_id: str, device_kind: str = SensorTag.DEVICE_KIND) -> str:
    """Series naming shared with the existing store: <metric>_<kind>_<device id>."""
    return f"{metric}_{device_kind}_{device_id}"


@dataclass(frozen=True)
class Sample:
    """One measurement on its way to the sink."""
    device_id: str
    metric: str
    value: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    device_kind: str = SensorTag.DEVICE_KIND

    @property
    def series(self) -> str:
        return series_name(self.metric, self.device_id, self.device_kind)


class TelemetryAdapter:
    """
    Forwards capability events to the telemetry sink.

    Each value of an event becomes one sample and is written on its own: a
    rejected write is logged and dropped without affecting the other samples
    of the event or later events.
    """

    def __init__(self, sink, logger, device_kind: str = SensorTag.DEVICE_KIND):
        self.sink = sink
        self.logger = logger
        self.device_kind = device_kind
        self._pending: Set[asyncio.Task] = set()
        self.samples_forwarded = 0
        self.samples_dropped = 0

    def to_samples(self, device_id: str, event: CapabilityEvent) -> List[Sample]:
        metrics = METRIC_FIELDS.get(event.capability)
        if metrics is None:
            return []

        timestamp = datetime.now(timezone.utc)
        return [
            Sample(device_id, metric, float(value), timestamp, self.device_kind)
            for metric, value in zip(metrics, event.values)
            if metric is not None
        ]

    async def forward(self, device_id: str, event: CapabilityEvent) -> int:
        """
        Write every sample of an event.

        Returns:
            int: Number of samples the sink accepted
        """
        written = 0
        for sample in self.to_samples(device_id, event):
            self.logger.debug(f"\treporter {device_id} - {sample.metric} = {sample.value:.1f}")
            try:
                await self.sink.write(sample.series, sample.timestamp, sample.value)
            except TelemetrySinkError as e:
                self.samples_dropped += 1
                self.logger.warning(f"Cannot write to db : {e}")
                continue
            written += 1
            self.samples_forwarded += 1
        return written

    async def forward_battery(self, device_id: str, level: float) -> int:
        """Forward a battery level read out of band."""
        return await self.forward(device_id, CapabilityEvent(Capability.BATTERY, (level,)))

    def dispatch(self, device_id: str, event: CapabilityEvent) -> asyncio.Task:
        """Schedule forwarding without blocking the event delivery path."""
        task = asyncio.get_running_loop().create_task(self.forward(device_id, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
