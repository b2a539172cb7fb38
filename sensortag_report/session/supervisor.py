"""
Session supervisor for SensorTag reporters.

Admits discovered handles, drives every admitted device through
connect -> configure -> stream under a setup deadline, and tears sessions
down on timeout, disconnect, configuration failure or shutdown. A device
that disconnects is forgotten and becomes eligible for rediscovery.
"""

import asyncio
import time
from typing import Dict, List, Optional, Set

from ..ble.sensortag import SensorTagError
from ..utils.config import Config
from ..utils.logging import PerformanceMonitor
from .models import DeviceSession, SessionState, SetupOutcome
from .sequencer import CaptureError, CaptureSequencer, SetupTimeoutError


class SessionRejectedError(Exception):
    """Exception raised when a device is already handled by an active session."""

    def __init__(self, device_id: str, message: str, session: Optional[DeviceSession] = None):
        self.device_id = device_id
        self.session = session
        super().__init__(message)


class SessionSupervisor:
    """
    Owner of the managed sessions map.

    Every mutation of the map happens on the event loop thread, either in
    admit() or in a session's teardown, and a teardown only removes the
    entry it owns.
    """

    def __init__(self, config: Config, logger, performance_monitor: PerformanceMonitor,
                 adapter, sequencer: Optional[CaptureSequencer] = None,
                 setup_deadline: Optional[float] = None):
        """
        Initialize the supervisor.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
            adapter: Telemetry adapter receiving capability events
            sequencer: Capture sequencer (built from config if None)
            setup_deadline: Setup bound in seconds (config.setup_deadline if None)
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.adapter = adapter
        self.sequencer = sequencer or CaptureSequencer(config, logger)
        self.setup_deadline = setup_deadline if setup_deadline is not None else config.setup_deadline

        self._sessions: Dict[str, DeviceSession] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._shutting_down = False

        self._stats = {
            "admitted": 0,
            "rejected": 0,
            "streaming": 0,
            "timeout": 0,
            "failed": 0,
            "disconnected": 0,
        }

    # Queries

    def get_session(self, device_id: str) -> Optional[DeviceSession]:
        return self._sessions.get(device_id)

    def managed_ids(self) -> List[str]:
        return list(self._sessions)

    def get_statistics(self) -> dict:
        """Get supervisor statistics."""
        states = {}
        for session in self._sessions.values():
            states[session.state.value] = states.get(session.state.value, 0) + 1
        return {
            **self._stats,
            "managed": len(self._sessions),
            "states": states,
        }

    # Admission

    def admit(self, handle) -> DeviceSession:
        """
        Take ownership of a discovered handle and start its setup.

        Returns immediately; setup continues in the background.

        Raises:
            SessionRejectedError: If the device already has an active session,
                or the supervisor is shutting down. The handle is left untouched.
        """
        device_id = handle.uuid

        if self._shutting_down:
            raise SessionRejectedError(device_id, f"reporter {device_id} rejected: shutting down")

        existing = self._sessions.get(device_id)
        if existing is not None and existing.is_active:
            self._stats["rejected"] += 1
            self.performance_monitor.log_session_outcome(device_id, "rejected")
            rejected = DeviceSession(device_id, handle, state=SessionState.REJECTED)
            raise SessionRejectedError(
                device_id,
                f"reporter {device_id} already handled ({existing.state.value})",
                rejected
            )

        loop = asyncio.get_running_loop()
        session = DeviceSession(device_id, handle)
        self._sessions[device_id] = session
        self._stats["admitted"] += 1

        session.state = SessionState.CONNECTING
        session.deadline = loop.call_later(self.setup_deadline, self._on_deadline, session)
        session.bind("setup_disconnect", "disconnect", lambda _handle: self._on_setup_disconnect(session))
        session.setup_task = loop.create_task(self._set_up(session))

        task = loop.create_task(self._run_session(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        self.logger.info(f"reporter {device_id} admitted")
        return session

    # Setup triggers. The first one to resolve the outcome wins.

    def _on_deadline(self, session: DeviceSession):
        session.deadline = None
        if session.resolve(SetupOutcome.TIMEOUT):
            self.logger.warning(
                f"reporter {session.device_id} timeout during preparation for capture "
                f"({self.setup_deadline}s)"
            )
            self._stop_setup(session)

    def _on_setup_disconnect(self, session: DeviceSession):
        if session.resolve(SetupOutcome.DISCONNECTED):
            self.logger.warning(f"reporter {session.device_id} disconnected during preparation for capture")
            session.disarm_deadline()
            self._stop_setup(session)

    def _stop_setup(self, session: DeviceSession):
        task = session.setup_task
        if task is not None and not task.done():
            task.cancel()

    async def _set_up(self, session: DeviceSession):
        handle = session.handle
        try:
            await self.sequencer.connect(handle)
            if session.outcome.done():
                return
            session.state = SessionState.CONFIGURING
            self.logger.debug(f"reporter {session.device_id} connected, configuring")
            level = await self.sequencer.configure(handle)
        except SetupTimeoutError as e:
            session.resolve(SetupOutcome.TIMEOUT, e)
            return
        except (CaptureError, SensorTagError) as e:
            session.resolve(SetupOutcome.FAILED, e)
            return
        except Exception as e:
            self.logger.error(f"reporter {session.device_id} unexpected setup error: {e!r}")
            session.resolve(SetupOutcome.FAILED, e)
            return

        session.battery_level = level
        session.resolve(SetupOutcome.CONFIGURED)

    @staticmethod
    def _reap(task: asyncio.Task):
        # Mark a finished task's exception as retrieved
        if task.done() and not task.cancelled():
            task.exception()

    async def _cancel_setup(self, session: DeviceSession):
        task = session.setup_task
        if task is None:
            return
        if task.done():
            self._reap(task)
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Session driver

    async def _run_session(self, session: DeviceSession):
        try:
            outcome = await session.outcome

            if outcome is SetupOutcome.CONFIGURED:
                await self._start_streaming(session)
            elif outcome is SetupOutcome.DISCONNECTED:
                await self._abort(session, outcome, disconnect=False)
            elif outcome in (SetupOutcome.TIMEOUT, SetupOutcome.FAILED):
                await self._abort(session, outcome, disconnect=True)
            # SHUTDOWN is handled by shutdown()
        except Exception as e:
            self.logger.error(f"reporter {session.device_id} session error: {e}")
            session.disarm_deadline()
            self._teardown(session, "failed")

    async def _abort(self, session: DeviceSession, outcome: SetupOutcome, disconnect: bool):
        session.disarm_deadline()
        session.unbind_all()
        await self._cancel_setup(session)

        if outcome is SetupOutcome.FAILED:
            self.logger.warning(f"{session.failure} during start capture - disconnect reporter {session.device_id}")

        if disconnect and session.handle.is_connected:
            self.logger.debug(f"try to disconnect reporter {session.device_id}")
            await self._disconnect_quietly(session)

        self._teardown(session, outcome.value)

    async def _start_streaming(self, session: DeviceSession):
        session.disarm_deadline()
        device_id = session.device_id

        # Link lost after the program completed but before streaming began
        if not session.handle.is_connected:
            self.logger.warning(f"reporter {device_id} disconnected during preparation for capture")
            self._teardown(session, "disconnected")
            return

        session.state = SessionState.STREAMING
        session.streaming_since = time.monotonic()
        session.unbind("setup_disconnect")
        session.bind("disconnect", "disconnect", lambda _handle: self._on_runtime_disconnect(session))

        self._stats["streaming"] += 1
        self.performance_monitor.log_session_outcome(device_id, "streaming", session.setup_duration)
        self.logger.info(f"reporter {device_id} ready to capture")

        if session.battery_level is not None:
            await self.adapter.forward_battery(device_id, session.battery_level)

        # A disconnect may have arrived while the baseline was written
        if session.state is SessionState.STREAMING:
            session.bind("telemetry", "event", lambda event: self.adapter.dispatch(device_id, event))

    def _on_runtime_disconnect(self, session: DeviceSession):
        if session.state is not SessionState.STREAMING:
            return
        self.logger.info(f"reporter {session.device_id} disconnected")
        self._teardown(session, "disconnected")

    def _teardown(self, session: DeviceSession, outcome: str):
        session.disarm_deadline()
        session.unbind_all()

        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]

        session.state = SessionState.DISCONNECTED
        if outcome in self._stats:
            self._stats[outcome] += 1
        self.performance_monitor.log_session_outcome(session.device_id, outcome)

    async def _disconnect_quietly(self, session: DeviceSession) -> bool:
        try:
            await session.handle.disconnect()
            self.logger.debug(f"reporter {session.device_id} disconnected")
            return True
        except Exception as e:
            self.logger.warning(f"could not disconnect reporter {session.device_id}: {e}")
            return False

    # Shutdown

    async def shutdown(self):
        """
        Stop every session: cancel pending timers and setup work, then
        disconnect configuring and streaming devices. A failing disconnect
        does not stop the others.
        """
        self._shutting_down = True
        sessions = list(self._sessions.values())
        self.logger.info(f"Shutting down {len(sessions)} session(s)")

        for session in sessions:
            session.resolve(SetupOutcome.SHUTDOWN)
            session.disarm_deadline()
            session.unbind_all()

        setup_tasks = [s.setup_task for s in sessions if s.setup_task is not None]
        for task in setup_tasks:
            self._reap(task)

        pending = [task for task in self._tasks if not task.done()]
        pending += [task for task in setup_tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        targets = [
            s for s in sessions
            if s.state in (SessionState.CONFIGURING, SessionState.STREAMING) or s.handle.is_connected
        ]
        results = await asyncio.gather(
            *(self._disconnect_quietly(s) for s in targets),
            return_exceptions=True
        )
        failures = sum(1 for result in results if result is not True)
        if failures:
            self.logger.warning(f"{failures} reporter(s) could not be disconnected")

        for session in sessions:
            if session.state is not SessionState.DISCONNECTED:
                self._teardown(session, "shutdown")

        await self.adapter.drain()
        self.logger.info("All sessions stopped")
