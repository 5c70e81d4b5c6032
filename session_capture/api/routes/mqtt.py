"""
Bus observability API routes.

Read-only views of the broker connection, routing counters and the
router's caches.
All endpoints answer even when the broker is disabled or disconnected.
"""

from fastapi import APIRouter, Depends, Query

from ...service import CaptureServiceManager
from ..deps import get_service
from ..schemas import (
    BrokerStatusResponse,
    CachedMessageResponse,
    DeviceListResponse,
    MessageListResponse,
    RoutingStatsResponse,
    SessionRoutingResponse,
    TopicListResponse,
)


router = APIRouter(prefix="/mqtt", tags=["mqtt"])


def _routing_stats(service: CaptureServiceManager) -> RoutingStatsResponse:
    stats = service.router.get_stats()
    sessions = []
    for session_id, routed in sorted(stats["sessions"].items()):
        sink = service.registry.get_sink(session_id)
        sessions.append(SessionRoutingResponse(
            session_id=session_id,
            routed=routed,
            capture=sink.get_stats() if sink is not None else None,
        ))
    return RoutingStatsResponse(
        total_messages=stats["total_messages"], topics=stats["topics"], sessions=sessions,
    )


@router.get("/status", response_model=BrokerStatusResponse)
def get_broker_status(service: CaptureServiceManager = Depends(get_service)):
    routing = _routing_stats(service)
    if service.broker is None:
        return BrokerStatusResponse(
            enabled=False,
            connected=False,
            endpoints=list(service.config.broker.urls),
            routing=routing,
        )
    return BrokerStatusResponse(enabled=True, routing=routing, **service.broker.status())


@router.get("/topics", response_model=TopicListResponse)
def list_topics(service: CaptureServiceManager = Depends(get_service)):
    topics = service.router.topics()
    return TopicListResponse(topics=topics, total=len(topics))


@router.get("/messages", response_model=MessageListResponse)
def list_messages(
    topic: str = Query(..., description="Exact topic to read from the rolling cache"),
    service: CaptureServiceManager = Depends(get_service),
):
    messages = [
        CachedMessageResponse(**m.to_dict())
        for m in service.message_cache.get_messages(topic)
    ]
    return MessageListResponse(topic=topic, messages=messages, total=len(messages))


@router.get("/devices", response_model=DeviceListResponse)
def list_devices(service: CaptureServiceManager = Depends(get_service)):
    devices = service.device_registry.list_devices()
    return DeviceListResponse(devices=devices, total=len(devices))
