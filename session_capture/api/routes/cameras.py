"""
Camera and recording API routes.

Standalone recordings (outside any session) and live recording status.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from ...config import CameraConfig
from ...errors import ConflictError, NotFoundError, ProcessError
from ...service import CaptureServiceManager
from ..deps import get_service
from ..schemas import (
    ActiveRecordingsResponse,
    CameraListResponse,
    CameraResponse,
    RecordingResponse,
)


router = APIRouter(tags=["cameras"])


def _camera_response(service: CaptureServiceManager, camera: CameraConfig) -> CameraResponse:
    recording = service.supervisor.get_recording(camera.id)
    return CameraResponse(
        id=camera.id,
        name=camera.name,
        prefix=camera.file_prefix,
        stream_url=camera.masked_stream_url(),
        is_recording=service.supervisor.is_recording(camera.id),
        recording=RecordingResponse.from_recording(recording) if recording else None,
    )


@router.get("/cameras", response_model=CameraListResponse)
def list_cameras(service: CaptureServiceManager = Depends(get_service)):
    cameras = [_camera_response(service, c) for c in service.config.cameras]
    return CameraListResponse(cameras=cameras, total=len(cameras))


@router.post(
    "/cameras/{camera_id}/recording",
    response_model=RecordingResponse,
    status_code=status.HTTP_201_CREATED,
)
def start_camera_recording(camera_id: str, service: CaptureServiceManager = Depends(get_service)):
    """Start a standalone recording.

    Raises:
        HTTPException: 404 unknown camera, 409 already recording,
            500 encoder failed to spawn
    """
    try:
        recording = service.registry.start_recording(camera_id)
        return RecordingResponse.from_recording(recording)

    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ProcessError as e:
        logger.error(f"Standalone recording failed for camera {camera_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.delete("/cameras/{camera_id}/recording", response_model=RecordingResponse)
def stop_camera_recording(camera_id: str, service: CaptureServiceManager = Depends(get_service)):
    """Stop a camera's recording (idempotent).

    Returns the final recording, or the most recent one when nothing
    was running.

    Raises:
        HTTPException: 404 when the camera is unknown and has never recorded
    """
    recording = service.registry.stop_recording(camera_id)
    if recording is None:
        recording = service.supervisor.get_recording(camera_id)
    if recording is None:
        if service.config.get_camera(camera_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Camera {camera_id} not found",
            )
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Camera {camera_id} has no recording",
        )
    return RecordingResponse.from_recording(recording)


@router.get("/recordings/active", response_model=ActiveRecordingsResponse)
def list_active_recordings(service: CaptureServiceManager = Depends(get_service)):
    recordings = [RecordingResponse.from_recording(r) for r in service.supervisor.active_recordings()]
    return ActiveRecordingsResponse(recordings=recordings, total=len(recordings))
