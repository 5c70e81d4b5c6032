"""
Session API routes.

WHAT THIS IS:
- Start/stop of capture sessions (single active session)
- Session listing and detail with recordings
- Artifact discovery and archive download with progress

CRITICAL CONSTRAINTS:
- Blocking handlers are plain `def` (FastAPI runs them in the thread pool)
- A second start while a session is active → 409, active session untouched
- Stop is idempotent
- Download streams a temp archive that is deleted after streaming
"""

import asyncio
import threading

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from loguru import logger

from ...archiver import iter_archive
from ...errors import ConflictError, ExportCancelled, NotFoundError, StorageError
from ...service import CaptureServiceManager
from ..deps import get_service
from ..schemas import (
    ExportProgressResponse,
    SessionCreateRequest,
    SessionFilesResponse,
    SessionListResponse,
    SessionResponse,
    StartSessionResponse,
)


router = APIRouter(prefix="/sessions", tags=["sessions"])


def _session_response(service: CaptureServiceManager, session) -> SessionResponse:
    return SessionResponse.from_session(session, service.store.list_recordings(session.id))


@router.post("", response_model=StartSessionResponse, status_code=status.HTTP_201_CREATED)
def start_session(
    request_body: SessionCreateRequest,
    service: CaptureServiceManager = Depends(get_service),
):
    """Start a capture session.

    Returns:
        StartSessionResponse with the session and any per-camera failures

    Raises:
        HTTPException: 409 if a session is already active,
            500 if storage could not be provisioned
    """
    try:
        result = service.registry.start_session(
            selected_sensors=request_body.selected_sensors,
            selected_cameras=request_body.selected_cameras,
            name=request_body.name,
            description=request_body.description,
            metadata=request_body.session_metadata(),
        )
        return StartSessionResponse(
            session=SessionResponse.from_session(result.session, result.recordings),
            failed_cameras=result.failed_cameras,
            degraded=result.degraded,
        )

    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StorageError as e:
        logger.error(f"Session start failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to start session: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start session: {str(e)}",
        )


@router.post("/{session_id}/stop", response_model=SessionResponse)
def stop_session(session_id: int, service: CaptureServiceManager = Depends(get_service)):
    """Stop a session (idempotent: stopping a completed session returns it unchanged)."""
    try:
        session = service.registry.stop_session(session_id)
        return _session_response(service, session)

    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to stop session {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to stop session: {str(e)}",
        )


@router.get("", response_model=SessionListResponse)
def list_sessions(service: CaptureServiceManager = Depends(get_service)):
    sessions = [_session_response(service, s) for s in service.store.list_sessions()]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.get("/active", response_model=SessionResponse)
def get_active_session(service: CaptureServiceManager = Depends(get_service)):
    session = service.registry.get_active_session()
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active session")
    return _session_response(service, session)


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(session_id: int, service: CaptureServiceManager = Depends(get_service)):
    session = service.store.get_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return _session_response(service, session)


@router.get("/{session_id}/files", response_model=SessionFilesResponse)
def get_session_files(session_id: int, service: CaptureServiceManager = Depends(get_service)):
    """Located artifacts of a session plus the expected files that are missing."""
    try:
        result = service.locator.locate_artifacts(session_id)
        return SessionFilesResponse.from_result(session_id, result)

    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to locate files for session {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to locate session files: {str(e)}",
        )


@router.get("/{session_id}/download")
async def download_session(
    session_id: int,
    request: Request,
    service: CaptureServiceManager = Depends(get_service),
):
    """Build and stream the session archive.

    The build runs in the thread pool; a client that disconnects while
    the archive is being built cancels it.

    Raises:
        HTTPException: 404 unknown session, 500 build failure
    """
    session = service.store.get_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )

    cancel_event = threading.Event()

    def build():
        located = service.locator.locate_artifacts(session_id)
        return service.archiver.build_archive(session, located, cancel_event=cancel_event)

    build_task = asyncio.ensure_future(run_in_threadpool(build))
    try:
        while not build_task.done():
            await asyncio.wait({build_task}, timeout=0.5)
            if not build_task.done() and await request.is_disconnected():
                logger.info(f"Client disconnected during export of session {session_id}")
                cancel_event.set()
        archive_path = build_task.result()

    except ExportCancelled as e:
        raise HTTPException(status_code=499, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to export session {session_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to export session: {str(e)}",
        )

    filename = f"session_{session_id}.zip"
    return StreamingResponse(
        iter_archive(archive_path, service.config.export.chunk_size),
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{session_id}/export-progress", response_model=ExportProgressResponse)
def get_export_progress(session_id: int, service: CaptureServiceManager = Depends(get_service)):
    progress = service.export_progress.get(session_id)
    if progress is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No export in progress for session {session_id}",
        )
    return ExportProgressResponse.from_progress(session_id, progress)
