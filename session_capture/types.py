"""
Session Capture Orchestrator – State Model

This module defines the lifecycle enums shared by every component.

SCOPE:
- SessionStatus (session lifecycle)
- RecordingStatus (encoder process lifecycle)
- ExportStatus (archive build lifecycle)
- No execution logic
- No external dependencies
"""

from enum import Enum


class SessionStatus(Enum):
    """
    Session lifecycle states.

    ACTIVE: Session is capturing (at most one system-wide)
    COMPLETED: Session was stopped and finalized
    ERROR: Session could not be provisioned

    State transitions:
    - ACTIVE -> COMPLETED (via stop_session())
    - ACTIVE -> ERROR (provisioning failure during start_session())

    No other transitions are valid.
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class RecordingStatus(Enum):
    """
    Recording lifecycle states.

    STARTING: Encoder spawned, no output observed yet
    RECORDING: Encoder produced its first output line
    COMPLETED: Encoder exited with code 0 (or after a requested stop)
    ERROR: Encoder failed to spawn or exited abnormally

    State transitions:
    - STARTING -> RECORDING (first output line)
    - STARTING -> COMPLETED | ERROR (exit before any output)
    - RECORDING -> COMPLETED | ERROR (process exit)
    """
    STARTING = "starting"
    RECORDING = "recording"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordingStatus.COMPLETED, RecordingStatus.ERROR)


class ExportStatus(Enum):
    """Archive build progress states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
