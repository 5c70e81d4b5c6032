from .devices import (
    ActiveRecordingsResponse,
    BrokerStatusResponse,
    CachedMessageResponse,
    CameraListResponse,
    CameraResponse,
    DeviceListResponse,
    MessageListResponse,
    RoutingStatsResponse,
    SessionRoutingResponse,
    TopicListResponse,
)
from .session import (
    ArtifactResponse,
    ExportProgressResponse,
    MissingArtifactResponse,
    RecordingResponse,
    SessionCreateRequest,
    SessionFilesResponse,
    SessionListResponse,
    SessionResponse,
    StartSessionResponse,
)

__all__ = [
    "ActiveRecordingsResponse",
    "ArtifactResponse",
    "BrokerStatusResponse",
    "CachedMessageResponse",
    "CameraListResponse",
    "CameraResponse",
    "DeviceListResponse",
    "ExportProgressResponse",
    "MessageListResponse",
    "MissingArtifactResponse",
    "RecordingResponse",
    "RoutingStatsResponse",
    "SessionCreateRequest",
    "SessionFilesResponse",
    "SessionListResponse",
    "SessionRoutingResponse",
    "SessionResponse",
    "StartSessionResponse",
    "TopicListResponse",
]
