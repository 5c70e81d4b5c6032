"""
Camera and bus schemas.

Read-only views of cameras (with live recording status) and of the
broker-side caches: connection status, topics, messages, devices.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .session import RecordingResponse


class CameraResponse(BaseModel):
    id: str = Field(..., description="Camera identifier")
    name: str = Field(..., description="Camera name")
    prefix: str = Field(..., description="Recording filename prefix")
    stream_url: str = Field(..., description="Stream URL with credentials masked")
    is_recording: bool = Field(..., description="Encoder currently running")
    recording: Optional[RecordingResponse] = Field(
        None, description="Live recording, else the most recent one"
    )


class CameraListResponse(BaseModel):
    cameras: List[CameraResponse]
    total: int


class ActiveRecordingsResponse(BaseModel):
    recordings: List[RecordingResponse]
    total: int


class SessionRoutingResponse(BaseModel):
    session_id: int
    routed: int = Field(..., description="Messages dispatched to this session")
    capture: Optional[Dict[str, Any]] = Field(
        None, description="Sink counters; absent once the sink is finalized"
    )


class RoutingStatsResponse(BaseModel):
    total_messages: int = Field(..., description="Messages decoded since startup")
    topics: int = Field(..., description="Distinct topics seen")
    sessions: List[SessionRoutingResponse] = Field(default_factory=list)


class BrokerStatusResponse(BaseModel):
    """Schema for the broker connection state."""

    enabled: bool = Field(..., description="False when running video-only")
    connected: bool = Field(..., description="Connected to an endpoint")
    endpoint: Optional[str] = Field(None, description="Endpoint currently connected")
    endpoints: List[str] = Field(default_factory=list, description="Configured endpoints in order")
    attempt: int = Field(0, description="Failed attempts since the last success", ge=0)
    last_error: Optional[str] = Field(None)
    connected_since: Optional[float] = Field(None, description="Epoch seconds of the last connect")
    routing: Optional[RoutingStatsResponse] = Field(None, description="Router and session sink counters")

    class Config:
        json_schema_extra = {
            "example": {
                "enabled": True,
                "connected": True,
                "endpoint": "mqtt://192.168.0.20:1883",
                "endpoints": ["mqtt://192.168.0.20:1883", "ws://mqtt:9001"],
                "attempt": 0,
                "last_error": None,
                "connected_since": 1760700000.0,
                "routing": {
                    "total_messages": 1542,
                    "topics": 12,
                    "sessions": [{"session_id": 3, "routed": 310, "capture": None}],
                },
            }
        }


class TopicListResponse(BaseModel):
    topics: List[str]
    total: int


class CachedMessageResponse(BaseModel):
    topic: str
    payload: Any
    timestamp: str


class MessageListResponse(BaseModel):
    topic: str
    messages: List[CachedMessageResponse]
    total: int


class DeviceListResponse(BaseModel):
    devices: List[Dict[str, Any]] = Field(..., description="Bridge device list as published")
    total: int
