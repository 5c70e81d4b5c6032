"""
Session and recording schemas for request/response validation.

WHAT THIS IS:
- Data transfer objects for the session, recording and export APIs
- Conversions from the orchestrator's domain objects

WHAT THIS IS NOT:
- Persistence models (the session store owns those)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ...archiver import ExportProgress
from ...locator import LocateResult
from ...recording import Recording
from ...session import Session


class SessionCreateRequest(BaseModel):
    """Schema for starting a session."""

    name: Optional[str] = Field(None, description="Session label (defaults to 'Session <id>')")
    description: str = Field("", description="Free-text description")
    selected_sensors: List[str] = Field(
        default_factory=list,
        description="Sensor identities to capture; empty captures every topic",
    )
    selected_cameras: List[str] = Field(default_factory=list, description="Camera ids to record")
    researcher: Optional[str] = Field(None, description="Researcher running the session")
    participants: List[str] = Field(default_factory=list, description="Participant labels")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    notes: Optional[str] = Field(None, description="Notes included in the export README")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Kitchen morning routine",
                "selected_sensors": ["TEMP-1", "MOTION-KITCHEN"],
                "selected_cameras": ["1", "2"],
                "researcher": "R. Alvarez",
                "participants": ["P01"],
                "tags": ["kitchen", "pilot"],
            }
        }

    def session_metadata(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "participants": list(self.participants),
            "tags": list(self.tags),
        }
        if self.researcher:
            metadata["researcher"] = self.researcher
        if self.notes:
            metadata["notes"] = self.notes
        return metadata


class RecordingMetricsResponse(BaseModel):
    fps: float = Field(0.0, description="Encoder frames per second")
    bitrate_kbps: float = Field(0.0, description="Output bitrate in kbit/s")
    frames: int = Field(0, description="Frames written", ge=0)
    total_size_bytes: int = Field(0, description="Bytes written", ge=0)
    uptime_seconds: float = Field(0.0, description="Seconds since spawn")
    consecutive_errors: int = Field(0, description="Encoder error lines since last progress", ge=0)


class RecordingResponse(BaseModel):
    """Schema for one camera recording."""

    recording_id: str = Field(..., description="Recording identifier")
    camera_id: str = Field(..., description="Camera identifier")
    session_id: Optional[int] = Field(None, description="Owning session (null when standalone)")
    output_path: str = Field(..., description="Encoder output file")
    file_name: str = Field(..., description="Output file name")
    status: str = Field(..., description="starting | recording | completed | error")
    start_time: datetime = Field(..., description="Spawn time")
    end_time: Optional[datetime] = Field(None, description="Exit time")
    exit_code: Optional[int] = Field(None, description="Encoder exit code")
    error: Optional[str] = Field(None, description="Failure reason (status error)")
    metrics: RecordingMetricsResponse = Field(default_factory=RecordingMetricsResponse)

    @classmethod
    def from_recording(cls, recording: Recording) -> "RecordingResponse":
        return cls.model_validate(recording.to_dict())


class SessionResponse(BaseModel):
    """Schema for a session with its recordings."""

    id: int = Field(..., description="Session id")
    name: str = Field(..., description="Session label")
    description: str = Field("", description="Free-text description")
    status: str = Field(..., description="active | completed | error")
    start_time: datetime = Field(..., description="Capture start")
    end_time: Optional[datetime] = Field(None, description="Capture end (null while active)")
    selected_sensors: List[str] = Field(default_factory=list)
    selected_cameras: List[str] = Field(default_factory=list)
    storage_path: Optional[str] = Field(None, description="Session directory")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = Field(None)
    recordings: List[RecordingResponse] = Field(default_factory=list)

    @classmethod
    def from_session(
        cls, session: Session, recordings: Optional[List[Recording]] = None
    ) -> "SessionResponse":
        data = session.to_dict()
        data["recordings"] = [r.to_dict() for r in recordings or []]
        return cls.model_validate(data)


class StartSessionResponse(BaseModel):
    """Schema for a started session, including per-camera failures."""

    session: SessionResponse
    failed_cameras: Dict[str, str] = Field(
        default_factory=dict, description="camera_id -> reason for cameras that did not start"
    )
    degraded: bool = Field(False, description="True when at least one camera failed")


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse] = Field(..., description="Sessions, newest first")
    total: int = Field(..., description="Number of sessions returned")


class ArtifactResponse(BaseModel):
    path: str
    name: str
    kind: str = Field(..., description="recording | sensor | traffic | metadata")
    camera_id: Optional[str] = None
    sensor_id: Optional[str] = None
    strategy: str = Field(..., description="Search strategy that found the file")
    size_bytes: Optional[int] = None


class MissingArtifactResponse(BaseModel):
    name: str
    kind: str
    camera_id: Optional[str] = None
    reason: str = ""


class SessionFilesResponse(BaseModel):
    """Schema for located session artifacts."""

    session_id: int
    artifacts: List[ArtifactResponse] = Field(default_factory=list)
    missing: List[MissingArtifactResponse] = Field(default_factory=list)

    @classmethod
    def from_result(cls, session_id: int, result: LocateResult) -> "SessionFilesResponse":
        return cls(
            session_id=session_id,
            artifacts=[
                ArtifactResponse(
                    path=str(a.path), name=a.name, kind=a.kind, camera_id=a.camera_id,
                    sensor_id=a.sensor_id, strategy=a.strategy, size_bytes=a.size(),
                )
                for a in result.artifacts
            ],
            missing=[
                MissingArtifactResponse(
                    name=m.name, kind=m.kind, camera_id=m.camera_id, reason=m.reason
                )
                for m in result.missing
            ],
        )


class ExportProgressResponse(BaseModel):
    """Schema for archive build progress."""

    session_id: int
    total: int = Field(..., ge=0)
    processed: int = Field(..., ge=0)
    status: str = Field(..., description="pending | processing | completed | error")
    message: str = ""
    error: Optional[str] = None
    percent: float = Field(..., ge=0, le=100)

    @classmethod
    def from_progress(cls, session_id: int, progress: ExportProgress) -> "ExportProgressResponse":
        data = progress.to_dict()
        data.pop("updated_at", None)
        return cls(session_id=session_id, **data)
