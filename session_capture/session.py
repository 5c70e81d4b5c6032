"""
Session Capture Orchestrator – Session Model

A Session is a time-bounded capture run across sensors and cameras.

INVARIANT: at most one ACTIVE session system-wide (enforced by the
session registry, not by this model).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .types import SessionStatus


@dataclass
class Session:
    """
    Attributes:
        id: Numeric id allocated by the session store
        name: Human-readable label
        status: Lifecycle state
        start_time: When capture began
        end_time: When capture stopped (None while active)
        selected_sensors: Sensor filter (empty = capture-all)
        selected_cameras: Camera ids recorded for this session
        storage_path: Session directory (sessions/<id>)
        metadata: researcher, participants, tags, notes, ...
    """
    id: int
    name: str
    description: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    selected_sensors: List[str] = field(default_factory=list)
    selected_cameras: List[str] = field(default_factory=list)
    storage_path: Optional[Path] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def recordings_dir(self) -> Optional[Path]:
        return self.storage_path / "recordings" if self.storage_path else None

    @property
    def sensor_data_dir(self) -> Optional[Path]:
        return self.storage_path / "sensor_data" if self.storage_path else None

    @property
    def mqtt_data_dir(self) -> Optional[Path]:
        return self.storage_path / "mqtt_data" if self.storage_path else None

    def duration_seconds(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return max(0.0, (self.end_time - self.start_time).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "selected_sensors": list(self.selected_sensors),
            "selected_cameras": list(self.selected_cameras),
            "storage_path": str(self.storage_path) if self.storage_path else None,
            "metadata": dict(self.metadata),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        session = cls(
            id=int(data["id"]),
            name=data.get("name") or f"Session {data['id']}",
            description=data.get("description") or "",
            status=SessionStatus(data.get("status", SessionStatus.COMPLETED.value)),
            selected_sensors=list(data.get("selected_sensors") or []),
            selected_cameras=[str(c) for c in data.get("selected_cameras") or []],
            storage_path=Path(data["storage_path"]) if data.get("storage_path") else None,
            metadata=dict(data.get("metadata") or {}),
            error=data.get("error"),
        )
        if data.get("start_time"):
            session.start_time = datetime.fromisoformat(data["start_time"])
        if data.get("end_time"):
            session.end_time = datetime.fromisoformat(data["end_time"])
        return session
