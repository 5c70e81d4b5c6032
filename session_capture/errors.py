"""
Session Capture Orchestrator – Error Taxonomy

FAILURE ISOLATION:
- BrokerConnectionError → retried forever by the connection manager, never fatal
- ConflictError → surfaced to the caller, never retried
- ProcessError → one recording marked error, session continues
- WriteError → one sub-write skipped, message processing continues
- NotFoundError → export omission (locator) or 404 (API)
- StorageError → surfaced synchronously from start_session()
- ConfigError → raised at startup only
- ExportCancelled → partial archive deleted, progress marked error
"""

from typing import Optional


class CaptureError(Exception):
    """Base class for every orchestrator error."""


class BrokerConnectionError(CaptureError):
    """Broker endpoint unreachable or connection lost."""

    def __init__(self, endpoint: str, reason: str):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Broker {endpoint} unreachable: {reason}")


class ConflictError(CaptureError):
    """Operation conflicts with live state (active session, busy camera)."""


class ProcessError(CaptureError):
    """Encoder process failed to spawn or exited abnormally."""

    def __init__(self, camera_id: str, reason: str, exit_code: Optional[int] = None):
        self.camera_id = camera_id
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(f"Encoder for camera {camera_id} failed: {reason}")


class WriteError(CaptureError):
    """Per-file I/O failure inside a session sink."""

    def __init__(self, target: str, cause: BaseException):
        self.target = target
        self.cause = cause
        super().__init__(f"Write to {target} failed: {cause}")


class NotFoundError(CaptureError):
    """Unknown session/camera, or an artifact no search strategy could find."""


class StorageError(CaptureError):
    """Session storage layout could not be provisioned."""


class ConfigError(CaptureError):
    """Configuration file is structurally invalid."""


class ExportCancelled(CaptureError):
    """Archive build was cancelled before completion."""
