"""
Session Registry

Coordinates session start/stop across sensors (router + sink) and
cameras (recording supervisor).

CRITICAL CONSTRAINTS:
- At most one ACTIVE session system-wide
- The conflict check and slot reservation happen under the lock;
  all I/O happens outside it
- Start and stop are serialized: a stop issued while cameras are still
  starting waits for the start to finish, then stops every encoder
- Device-local failures (one camera, one file) never abort a session
- Session-level failures (storage provisioning) are raised synchronously

STOP CASCADE (best-effort, every step runs):
1. Stop the session's encoders concurrently
2. Unregister the router filter and broker topics
3. Finalize the sink (AllData.json)
4. Mark COMPLETED, persist, write session_metadata.json
5. Release the active slot
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .broker import BrokerConnectionManager
from .config import CaptureConfig
from .errors import ConflictError, NotFoundError, ProcessError, StorageError
from .recording import Recording
from .router import TopicRouter
from .session import Session
from .sink import SessionSink
from .store import SessionStore
from .supervisor import RecordingSupervisor
from .types import SessionStatus


SinkFactory = Callable[[Session], SessionSink]


@dataclass
class StartSessionResult:
    """
    Outcome of start_session().

    Attributes:
        session: The new ACTIVE session
        recordings: Recordings that spawned successfully
        failed_cameras: camera_id -> reason for cameras that did not start
    """
    session: Session
    recordings: List[Recording] = field(default_factory=list)
    failed_cameras: Dict[str, str] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.failed_cameras)


class SessionRegistry:
    """
    Central owner of the single-active-session invariant.

    LIFECYCLE:
    1. start_session() → ACTIVE
    2. stop_session() → COMPLETED (idempotent)
    3. shutdown() stops whatever is still running
    """

    def __init__(
        self,
        config: CaptureConfig,
        store: SessionStore,
        router: TopicRouter,
        supervisor: RecordingSupervisor,
        broker: Optional[BrokerConnectionManager] = None,
        sink_factory: Optional[SinkFactory] = None,
    ):
        self.config = config
        self.store = store
        self.router = router
        self.supervisor = supervisor
        self.broker = broker
        self._sink_factory = sink_factory or self._default_sink

        self.sessions_dir = Path(config.storage.sessions_dir)

        self._active_id: Optional[int] = None
        self._sinks: Dict[int, SessionSink] = {}
        self._lock = threading.Lock()
        # Held for a whole start or stop so a stop never misses an encoder
        self._transition_lock = threading.Lock()

        supervisor.add_exit_observer(self._on_recording_exit)

    def _default_sink(self, session: Session) -> SessionSink:
        return SessionSink(
            session.id,
            session.storage_path,
            session.selected_sensors,
            settings=self.config.sink,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        selected_sensors: Optional[List[str]] = None,
        selected_cameras: Optional[List[str]] = None,
        name: Optional[str] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StartSessionResult:
        """
        Start a capture session.

        Args:
            selected_sensors: Sensor filter (empty = capture-all)
            selected_cameras: Camera ids to record
            name: Session label (defaults to "Session <id>")
            description: Free text
            metadata: researcher, participants, tags, notes, ...

        Returns:
            StartSessionResult with per-camera failures

        Raises:
            ConflictError: Another session is active
            StorageError: Session directories could not be provisioned
        """
        sensors = [s for s in (selected_sensors or []) if s]
        cameras = [str(c) for c in (selected_cameras or [])]

        with self._lock:
            if self._active_id is not None:
                raise ConflictError(f"Session {self._active_id} is already active")
            session_id = self.store.allocate_id()
            self._active_id = session_id

        with self._transition_lock:
            return self._provision_and_start(
                session_id, sensors, cameras, name, description, metadata
            )

    def _provision_and_start(
        self,
        session_id: int,
        sensors: List[str],
        cameras: List[str],
        name: Optional[str],
        description: str,
        metadata: Optional[Dict[str, Any]],
    ) -> StartSessionResult:
        session = Session(
            id=session_id,
            name=name or f"Session {session_id}",
            description=description,
            selected_sensors=sensors,
            selected_cameras=cameras,
            storage_path=self.sessions_dir / str(session_id),
            metadata=dict(metadata or {}),
        )

        try:
            session.recordings_dir.mkdir(parents=True, exist_ok=True)
            sink = self._sink_factory(session)
            sink.open()
        except OSError as e:
            session.status = SessionStatus.ERROR
            session.error = str(e)
            session.end_time = datetime.now(timezone.utc)
            self.store.create_session(session)
            self._release(session_id)
            logger.error(f"Failed to provision storage for session {session_id}: {e}")
            raise StorageError(f"Cannot provision storage for session {session_id}: {e}")

        self.store.create_session(session)
        with self._lock:
            self._sinks[session_id] = sink

        self.router.register_session(session_id, sensors, sink)
        if self.broker is not None:
            self.broker.register_session_topics(session_id, sensors)
            self.broker.request_devices()

        result = StartSessionResult(session=session)
        for camera_id in cameras:
            camera = self.config.get_camera(camera_id)
            if camera is None:
                result.failed_cameras[camera_id] = "unknown camera"
                logger.warning(f"Session {session_id}: camera {camera_id} is not configured")
                continue
            try:
                recording = self.supervisor.start(
                    camera, session_id=session_id, output_dir=session.recordings_dir
                )
            except (ProcessError, ConflictError) as e:
                result.failed_cameras[camera_id] = str(e)
                logger.warning(f"Session {session_id}: camera {camera_id} did not start: {e}")
                continue
            self.store.add_recording(recording)
            result.recordings.append(recording)

        logger.info(
            f"Session {session_id} started: {len(sensors) or 'all'} sensors, "
            f"{len(result.recordings)}/{len(cameras)} cameras recording"
        )
        return result

    def stop_session(self, session_id: int) -> Session:
        """
        Stop a session (idempotent).

        Returns:
            The session (COMPLETED, or unchanged if not active)

        Raises:
            NotFoundError: Unknown session id
        """
        with self._transition_lock:
            session = self.store.require_session(session_id)
            if not session.is_active:
                logger.debug(f"Stop for session {session_id} ignored: status {session.status.value}")
                return session

            logger.info(f"Stopping session {session_id}")
            try:
                self._stop_session_recordings(session)
                self._detach(session_id)
                self._finalize_sink(session)

                session.status = SessionStatus.COMPLETED
                session.end_time = datetime.now(timezone.utc)
                self.store.update_session(session)
                self.store.write_session_metadata(session)
            finally:
                self._release(session_id)

            logger.info(
                f"Session {session_id} completed after {session.duration_seconds():.1f}s"
            )
            return session

    def _stop_session_recordings(self, session: Session) -> None:
        camera_ids = [
            r.camera_id for r in self.supervisor.active_recordings()
            if r.session_id == session.id
        ]
        try:
            results = self.supervisor.stop_many(camera_ids)
        except Exception as e:
            logger.error(f"Session {session.id}: stopping recordings failed: {e}")
            return

        for camera_id, recording in results.items():
            if recording is not None:
                self.store.update_recording(recording)

    def _detach(self, session_id: int) -> None:
        try:
            self.router.unregister_session(session_id)
        except Exception as e:
            logger.error(f"Session {session_id}: router unregistration failed: {e}")

        if self.broker is not None:
            try:
                self.broker.unregister_session_topics(session_id)
            except Exception as e:
                logger.error(f"Session {session_id}: broker unsubscription failed: {e}")

    def _finalize_sink(self, session: Session) -> None:
        with self._lock:
            sink = self._sinks.pop(session.id, None)
        if sink is None:
            return
        try:
            sink.finalize(
                topics_discovered=self.router.topics(),
                session_data={
                    "name": session.name,
                    "description": session.description,
                    "selectedCameras": session.selected_cameras,
                    "metadata": session.metadata,
                },
            )
        except Exception as e:
            logger.error(f"Session {session.id}: sink finalize failed: {e}")

    def _release(self, session_id: int) -> None:
        with self._lock:
            if self._active_id == session_id:
                self._active_id = None

    # ------------------------------------------------------------------
    # Standalone recordings
    # ------------------------------------------------------------------

    def start_recording(self, camera_id: str) -> Recording:
        """
        Start a recording outside any session.

        Raises:
            NotFoundError: Camera not configured
            ConflictError: Camera already recording
            ProcessError: Encoder failed to spawn
        """
        camera = self.config.get_camera(camera_id)
        if camera is None:
            raise NotFoundError(f"Camera {camera_id} not found")

        recording = self.supervisor.start(camera)
        self.store.add_recording(recording)
        return recording

    def stop_recording(self, camera_id: str) -> Optional[Recording]:
        """Stop a camera's recording (idempotent). None if nothing was running."""
        recording = self.supervisor.stop(camera_id)
        if recording is not None:
            self.store.update_recording(recording)
        return recording

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def _on_recording_exit(self, recording: Recording) -> None:
        self.store.update_recording(recording)

        if recording.session_id is None:
            return
        session = self.store.get_session(recording.session_id)
        if session is None:
            return
        if Path(recording.output_path).exists():
            self.store.register_recording_file(session, recording.output_path, recording.camera_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_session(self) -> Optional[Session]:
        with self._lock:
            active_id = self._active_id
        if active_id is None:
            return None
        session = self.store.get_session(active_id)
        return session if session is not None and session.is_active else None

    def get_sink(self, session_id: int) -> Optional[SessionSink]:
        with self._lock:
            return self._sinks.get(session_id)

    def recover(self) -> int:
        """
        Close out sessions left ACTIVE by a previous process.

        Their sinks and encoders are gone, so they are marked COMPLETED
        with the recovery time as end time.

        Returns:
            Number of sessions recovered
        """
        recovered = 0
        for session in self.store.list_sessions():
            if not session.is_active:
                continue
            session.status = SessionStatus.COMPLETED
            session.end_time = datetime.now(timezone.utc)
            session.error = "closed on restart"
            self.store.update_session(session)
            self.store.write_session_metadata(session)
            recovered += 1
            logger.warning(f"Session {session.id} was active at shutdown, marked completed")
        return recovered

    def shutdown(self) -> None:
        active = self.get_active_session()
        if active is not None:
            try:
                self.stop_session(active.id)
            except Exception as e:
                logger.error(f"Failed to stop session {active.id} on shutdown: {e}")

        for camera_id, recording in self.supervisor.stop_all().items():
            if recording is not None:
                self.store.update_recording(recording)
