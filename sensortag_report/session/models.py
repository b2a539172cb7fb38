"""
Session data model: lifecycle states, setup outcomes, the per-device
session object and the capture program every session runs.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from ..ble.sensortag import Capability


class SessionState(Enum):
    """Lifecycle states of a device session."""
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONFIGURING = "configuring"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    REJECTED = "rejected"


# States in which a session occupies its device identifier
ACTIVE_STATES = frozenset({
    SessionState.CONNECTING,
    SessionState.CONFIGURING,
    SessionState.STREAMING,
})

TERMINAL_STATES = frozenset({SessionState.DISCONNECTED, SessionState.REJECTED})


class SetupOutcome(Enum):
    """The trigger that ended the setup phase of a session."""
    CONFIGURED = "configured"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class CaptureStep:
    """One capability configuration step: enable, optional period, optional notify."""
    capability: Capability
    period: Optional[int] = None
    notify: bool = True

    def __str__(self):
        return self.capability.value


# Periods are firmware ticks of one second. Motion-wake arms the movement
# block and must precede the accelerometer.
CAPTURE_PROGRAM: Tuple[CaptureStep, ...] = (
    CaptureStep(Capability.HUMIDITY, period=10),
    CaptureStep(Capability.PRESSURE, period=30),
    CaptureStep(Capability.IR_TEMPERATURE, period=10),
    CaptureStep(Capability.LUX, period=10),
    CaptureStep(Capability.MOTION_WAKE, notify=False),
    CaptureStep(Capability.ACCELEROMETER, period=2),
)


@dataclass
class DeviceSession:
    """
    State owned by one admitted device.

    The session owns its event bindings (name -> (kind, callback)) so every
    binding can be detached in one place on teardown. The outcome future is
    assigned at most once: the first of deadline expiry, disconnect, setup
    completion, setup failure or shutdown wins and every later trigger is a
    no-op.
    """
    device_id: str
    handle: object
    state: SessionState = SessionState.DISCOVERED
    bindings: Dict[str, Tuple[str, Callable]] = field(default_factory=dict)
    deadline: Optional[asyncio.TimerHandle] = None
    setup_task: Optional[asyncio.Task] = None
    outcome: Optional[asyncio.Future] = None
    admitted_at: float = field(default_factory=time.monotonic)
    streaming_since: Optional[float] = None
    battery_level: Optional[int] = None
    failure: Optional[BaseException] = None

    def __post_init__(self):
        if self.outcome is None:
            self.outcome = asyncio.get_running_loop().create_future()

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def setup_duration(self) -> Optional[float]:
        if self.streaming_since is None:
            return None
        return self.streaming_since - self.admitted_at

    def resolve(self, outcome: SetupOutcome, error: Optional[BaseException] = None) -> bool:
        """
        Record the setup outcome if none has been recorded yet.

        Returns:
            bool: True when this call decided the outcome
        """
        if self.outcome.done():
            return False
        if error is not None:
            self.failure = error
        self.outcome.set_result(outcome)
        return True

    def disarm_deadline(self):
        if self.deadline is not None:
            self.deadline.cancel()
            self.deadline = None

    def bind(self, name: str, kind: str, callback: Callable):
        """Attach a listener to the driver handle and remember it."""
        if name in self.bindings:
            return
        if kind == "event":
            self.handle.add_event_listener(callback)
        else:
            self.handle.add_disconnect_listener(callback)
        self.bindings[name] = (kind, callback)

    def unbind(self, name: str):
        binding = self.bindings.pop(name, None)
        if binding is None:
            return
        kind, callback = binding
        if kind == "event":
            self.handle.remove_event_listener(callback)
        else:
            self.handle.remove_disconnect_listener(callback)

    def unbind_all(self):
        for name in list(self.bindings):
            self.unbind(name)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "state": self.state.value,
            "bindings": sorted(self.bindings),
            "battery_level": self.battery_level,
            "setup_duration": self.setup_duration,
        }
