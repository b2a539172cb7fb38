"""
Device session lifecycle: admission, ordered capture setup under a
deadline, streaming and teardown.
"""

from .models import (
    CAPTURE_PROGRAM,
    CaptureStep,
    DeviceSession,
    SessionState,
    SetupOutcome,
)
from .sequencer import CaptureError, CaptureSequencer, CaptureStepError, SetupTimeoutError
from .supervisor import SessionRejectedError, SessionSupervisor
from .discovery import DiscoveryLoop

__all__ = [
    "CAPTURE_PROGRAM",
    "CaptureStep",
    "DeviceSession",
    "SessionState",
    "SetupOutcome",
    "CaptureError",
    "CaptureSequencer",
    "CaptureStepError",
    "SetupTimeoutError",
    "SessionRejectedError",
    "SessionSupervisor",
    "DiscoveryLoop",
]
