"""
Unit tests for the telemetry adapter.
Tests event translation, series naming and write failure isolation.
"""

import asyncio

import pytest
from unittest.mock import Mock

from sensortag_report.ble.sensortag import Capability, CapabilityEvent
from sensortag_report.influxdb.adapter import METRIC_FIELDS, TelemetryAdapter, series_name
from tests.mocks.mock_sensortag import FakeSink


DEVICE = "546c0e52f3d4"


class TestSeriesNaming:
    """Test the per-device, per-metric series names."""

    def test_series_name_format(self):
        assert series_name("humidity", DEVICE) == "humidity_TI_ST_546c0e52f3d4"

    def test_every_metric_unique_per_device(self):
        metrics = [m for fields in METRIC_FIELDS.values() for m in fields if m is not None]
        names = {series_name(metric, DEVICE) for metric in metrics}
        assert len(names) == len(metrics)
        assert set(metrics) == {
            "temperature", "humidity", "pressure", "ambient_temperature",
            "lux", "accelX", "accelY", "accelZ", "battery",
        }


class TestToSamples:
    """Test event to sample translation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.adapter = TelemetryAdapter(FakeSink(), Mock())

    def test_humidity_event_yields_two_samples(self):
        samples = self.adapter.to_samples(DEVICE, CapabilityEvent(Capability.HUMIDITY, (22.5, 48.0)))

        assert [(s.metric, s.value) for s in samples] == [("temperature", 22.5), ("humidity", 48.0)]
        assert samples[0].timestamp == samples[1].timestamp
        assert samples[0].series == f"temperature_TI_ST_{DEVICE}"

    def test_ir_temperature_keeps_only_ambient(self):
        samples = self.adapter.to_samples(DEVICE, CapabilityEvent(Capability.IR_TEMPERATURE, (30.1, 24.2)))

        assert [(s.metric, s.value) for s in samples] == [("ambient_temperature", 24.2)]

    def test_accelerometer_event_yields_three_samples(self):
        samples = self.adapter.to_samples(DEVICE, CapabilityEvent(Capability.ACCELEROMETER, (0.0, 0.1, 1.0)))

        assert [s.metric for s in samples] == ["accelX", "accelY", "accelZ"]

    def test_unmapped_capability_yields_nothing(self):
        assert self.adapter.to_samples(DEVICE, CapabilityEvent(Capability.MOTION_WAKE, (1.0,))) == []


class TestForward:
    """Test forwarding to the sink."""

    def setup_method(self):
        """Set up test fixtures."""
        self.logger = Mock()

    @pytest.mark.asyncio
    async def test_failed_write_does_not_block_next_sample(self):
        """One humidity sample rejected, the pressure sample still written."""
        sink = FakeSink(fail_series={f"humidity_TI_ST_{DEVICE}"})
        adapter = TelemetryAdapter(sink, self.logger)

        written = await adapter.forward(DEVICE, CapabilityEvent(Capability.HUMIDITY, (21.0, 45.0)))
        written += await adapter.forward(DEVICE, CapabilityEvent(Capability.PRESSURE, (1012.5,)))

        assert written == 2
        assert sink.series == [f"temperature_TI_ST_{DEVICE}", f"pressure_TI_ST_{DEVICE}"]
        assert adapter.samples_dropped == 1
        self.logger.warning.assert_called_once()
        assert "Cannot write to db" in self.logger.warning.call_args[0][0]

    @pytest.mark.asyncio
    async def test_failure_in_one_session_does_not_affect_another(self):
        sink = FakeSink(fail_series={f"lux_TI_ST_{DEVICE}"})
        adapter = TelemetryAdapter(sink, self.logger)

        adapter.dispatch(DEVICE, CapabilityEvent(Capability.LUX, (300.0,)))
        adapter.dispatch("546c0e52f3d5", CapabilityEvent(Capability.LUX, (310.0,)))
        adapter.dispatch(DEVICE, CapabilityEvent(Capability.LUX, (305.0,)))
        await adapter.drain()

        assert sink.series == ["lux_TI_ST_546c0e52f3d5"]
        assert sink.attempts.count(f"lux_TI_ST_{DEVICE}") == 2

    @pytest.mark.asyncio
    async def test_failed_sample_not_retried(self):
        sink = FakeSink(fail_series={f"battery_TI_ST_{DEVICE}"})
        adapter = TelemetryAdapter(sink, self.logger)

        await adapter.forward_battery(DEVICE, 80)

        assert sink.attempts == [f"battery_TI_ST_{DEVICE}"]

    @pytest.mark.asyncio
    async def test_dispatch_does_not_block_caller(self):
        sink = FakeSink(write_delay=0.05)
        adapter = TelemetryAdapter(sink, self.logger)

        task = adapter.dispatch(DEVICE, CapabilityEvent(Capability.LUX, (12.0,)))

        assert not task.done()
        assert adapter.pending_count() == 1
        await adapter.drain()
        assert sink.series == [f"lux_TI_ST_{DEVICE}"]
        await asyncio.sleep(0)
        assert adapter.pending_count() == 0

    @pytest.mark.asyncio
    async def test_forward_battery(self):
        sink = FakeSink()
        adapter = TelemetryAdapter(sink, self.logger)

        await adapter.forward_battery(DEVICE, 77)

        assert sink.writes[0][0] == f"battery_TI_ST_{DEVICE}"
        assert sink.writes[0][2] == 77.0
