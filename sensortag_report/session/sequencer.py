"""
Capture sequencer: connects a SensorTag and runs the capture program
strictly in order.
"""

import asyncio
from typing import Iterable, Optional

from ..ble.sensortag import Capability, SensorTagError
from ..utils.config import Config
from .models import CAPTURE_PROGRAM, CaptureStep


class CaptureError(Exception):
    """Base exception for capture setup errors."""
    pass


class CaptureStepError(CaptureError):
    """Exception raised when a configuration step is rejected by the device."""

    def __init__(self, step: str, index: int, error: BaseException):
        self.step = step
        self.index = index
        self.error = error
        super().__init__(f"step {index} ({step}) failed: {error}")


class SetupTimeoutError(CaptureError):
    """Exception raised when connecting takes longer than allowed."""
    pass


class CaptureSequencer:
    """
    Drives one connected handle through the capture program.

    Each step is awaited to completion before the next starts. The first
    failing step aborts the program; no step is retried.
    """

    def __init__(self, config: Config, logger, program: Iterable[CaptureStep] = CAPTURE_PROGRAM):
        self.config = config
        self.logger = logger
        self.program = tuple(program)

        self.connect_timeout = config.connect_setup_max_dur
        self.settle_time = config.wait_after_conn_dur

    async def connect(self, handle):
        """
        Connect the handle and wait for the link to settle.

        Raises:
            SetupTimeoutError: If connecting exceeded the connect bound
            SensorTagError: If the driver failed to connect
        """
        self.logger.debug(f"{handle} connecting")
        try:
            await asyncio.wait_for(handle.connect_and_set_up(), self.connect_timeout)
        except asyncio.TimeoutError:
            raise SetupTimeoutError(f"{handle} connect did not complete within {self.connect_timeout}s")

        if self.settle_time > 0:
            await asyncio.sleep(self.settle_time)

    async def _run_step(self, handle, step: CaptureStep):
        await handle.enable(step.capability)
        if step.period is not None:
            await handle.set_period(step.capability, step.period)
        if step.notify:
            await handle.notify(step.capability)

    async def configure(self, handle, program: Optional[Iterable[CaptureStep]] = None) -> int:
        """
        Run the capture program, then read and subscribe to the battery level.

        Returns:
            int: Baseline battery level

        Raises:
            CaptureStepError: On the first rejected step
        """
        steps = tuple(program) if program is not None else self.program

        for index, step in enumerate(steps, start=1):
            self.logger.debug(f"{handle} step {index}/{len(steps)}: {step}")
            try:
                await self._run_step(handle, step)
            except SensorTagError as e:
                raise CaptureStepError(str(step), index, e)

        battery_index = len(steps) + 1
        try:
            level = await handle.read_battery_level()
        except SensorTagError as e:
            raise CaptureStepError("battery read", battery_index, e)

        try:
            await handle.notify(Capability.BATTERY)
        except SensorTagError as e:
            raise CaptureStepError("battery notify", battery_index + 1, e)

        return level
