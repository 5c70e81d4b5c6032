"""
Session Capture Orchestrator – Recording Model

This module defines one camera recording and its encoder metrics.

SCOPE:
- Recording (identity, paths, lifecycle state)
- RecordingMetrics (sampled encoder statistics)
- ProgressParser (ffmpeg `-progress` key=value stream)
- No process management (see supervisor.py)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import uuid

from .types import RecordingStatus


@dataclass
class RecordingMetrics:
    """
    Encoder statistics sampled from progress output.

    Attributes:
        fps: Frames per second reported by the encoder
        bitrate_kbps: Output bitrate in kbit/s
        frames: Frames written so far
        total_size_bytes: Bytes written so far
        uptime_seconds: Seconds since the process was spawned
        consecutive_errors: stderr error lines since the last good progress block
    """
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    frames: int = 0
    total_size_bytes: int = 0
    uptime_seconds: float = 0.0
    consecutive_errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fps": self.fps,
            "bitrate_kbps": self.bitrate_kbps,
            "frames": self.frames,
            "total_size_bytes": self.total_size_bytes,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "consecutive_errors": self.consecutive_errors,
        }


@dataclass
class Recording:
    """
    One encoder run for one camera.

    A Recording is owned by a session (session_id set) or is standalone.
    Status transitions follow RecordingStatus.
    """
    camera_id: str
    output_path: Path
    session_id: Optional[int] = None
    recording_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: RecordingStatus = RecordingStatus.STARTING
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    pid: Optional[int] = None
    stop_requested: bool = False
    metrics: RecordingMetrics = field(default_factory=RecordingMetrics)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def file_name(self) -> str:
        return Path(self.output_path).name

    def duration_seconds(self) -> float:
        end = self.end_time or datetime.now(timezone.utc)
        return max(0.0, (end - self.start_time).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recording_id": self.recording_id,
            "camera_id": self.camera_id,
            "session_id": self.session_id,
            "output_path": str(self.output_path),
            "file_name": self.file_name,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "exit_code": self.exit_code,
            "error": self.error,
            "metrics": self.metrics.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recording":
        recording = cls(
            camera_id=str(data["camera_id"]),
            output_path=Path(data["output_path"]),
            session_id=data.get("session_id"),
            recording_id=data.get("recording_id") or uuid.uuid4().hex[:12],
            status=RecordingStatus(data.get("status", RecordingStatus.COMPLETED.value)),
            exit_code=data.get("exit_code"),
            error=data.get("error"),
        )
        if data.get("start_time"):
            recording.start_time = datetime.fromisoformat(data["start_time"])
        if data.get("end_time"):
            recording.end_time = datetime.fromisoformat(data["end_time"])
        metrics = data.get("metrics") or {}
        for key in RecordingMetrics.__dataclass_fields__:
            if key in metrics:
                setattr(recording.metrics, key, metrics[key])
        return recording


class ProgressParser:
    """
    Incremental parser for ffmpeg `-progress pipe:1` output.

    ffmpeg emits blocks of key=value lines terminated by
    `progress=continue` or `progress=end`. feed() returns the completed
    block as a dict, or None while a block is still open.
    """

    def __init__(self):
        self._current: Dict[str, str] = {}

    def feed(self, line: str) -> Optional[Dict[str, str]]:
        line = line.strip()
        if not line or "=" not in line:
            return None

        key, _, value = line.partition("=")
        self._current[key.strip()] = value.strip()

        if key.strip() == "progress":
            block, self._current = self._current, {}
            return block
        return None

    @staticmethod
    def apply(block: Dict[str, str], metrics: RecordingMetrics) -> None:
        """Copy the numeric fields of a progress block onto metrics."""
        metrics.frames = _to_int(block.get("frame"), metrics.frames)
        metrics.fps = _to_float(block.get("fps"), metrics.fps)
        metrics.total_size_bytes = _to_int(block.get("total_size"), metrics.total_size_bytes)

        bitrate = block.get("bitrate", "")
        if bitrate.endswith("kbits/s"):
            metrics.bitrate_kbps = _to_float(bitrate[: -len("kbits/s")], metrics.bitrate_kbps)


def _to_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, "", "N/A") else default
    except ValueError:
        return default


def _to_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value not in (None, "", "N/A") else default
    except ValueError:
        return default
