"""
Session Capture Orchestrator.

Coordinates synchronized capture of Zigbee sensor traffic (via an MQTT
broker) and RTSP camera video (via ffmpeg) into research sessions, and
exports each session as a single archive.
"""

__version__ = "0.1.0"

from .config import CaptureConfig, load_config  # noqa: E402
from .errors import (  # noqa: E402
    BrokerConnectionError,
    CaptureError,
    ConfigError,
    ConflictError,
    ExportCancelled,
    NotFoundError,
    ProcessError,
    StorageError,
    WriteError,
)
from .service import CaptureServiceManager  # noqa: E402

__all__ = [
    "__version__",
    "BrokerConnectionError",
    "CaptureConfig",
    "CaptureError",
    "CaptureServiceManager",
    "ConfigError",
    "ConflictError",
    "ExportCancelled",
    "NotFoundError",
    "ProcessError",
    "StorageError",
    "WriteError",
    "load_config",
]
