"""
Discovery loop: feeds newly seen SensorTags to the session supervisor.
"""

import asyncio
from typing import Optional

from ..ble.scanner import ScannerError
from ..utils.config import Config
from .supervisor import SessionRejectedError


class DiscoveryLoop:
    """
    Repeatedly discovers one tag, hands it to the supervisor and pauses.

    Runs until stop() is called. Neither a rejected admission nor a failing
    scan ends the loop.
    """

    def __init__(self, config: Config, logger, scanner, supervisor, pause: Optional[float] = None):
        self.config = config
        self.logger = logger
        self.scanner = scanner
        self.supervisor = supervisor
        self.pause = pause if pause is not None else config.ble_discovery_pause

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.discovered = 0
        self.rejected = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _discover_once(self):
        try:
            handle = await self.scanner.discover()
        except ScannerError as e:
            self.errors += 1
            self.logger.error(f"Discovery failed: {e}")
            return
        except Exception as e:
            self.errors += 1
            self.logger.error(f"Unexpected discovery error: {e!r}")
            return

        self.discovered += 1
        try:
            self.supervisor.admit(handle)
        except SessionRejectedError as e:
            self.rejected += 1
            self.logger.debug(f"{e}")
        except Exception as e:
            self.errors += 1
            self.logger.error(f"Could not admit {handle}: {e!r}")

    async def run(self):
        """Discover until stopped."""
        self.logger.info("Start discovering SensorTags")
        while not self._stop_event.is_set():
            await self._discover_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.pause)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Discovery stopped")

    def start(self) -> asyncio.Task:
        """Run the loop as a background task."""
        if not self.is_running:
            self._stop_event.clear()
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self):
        """Stop the loop, abandoning a discovery in progress."""
        self._stop_event.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
