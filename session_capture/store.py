"""
Session Store

File-backed stand-in for the relational metadata store.

SCOPE:
- Session and recording records (in memory, persisted to <data_dir>/sessions.json)
- Session id allocation
- Per-session file manifest (session_files.json, idempotent registration)
- Per-session metadata document (session_metadata.json)

CRITICAL CONSTRAINTS:
- Every rewrite is atomic (temp file + os.replace)
- A persistence failure is logged; in-memory state stays authoritative
- No cross-file transactions (metadata and filesystem may diverge)
"""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import NotFoundError
from .fileio import iso_now, read_json, write_json_atomic
from .recording import Recording
from .session import Session


SESSIONS_FILE = "sessions.json"
SESSION_FILES_FILE = "session_files.json"
SESSION_METADATA_FILE = "session_metadata.json"


class SessionStore:
    """
    Sessions and their recordings, keyed by session id.

    Thread-safe: all mutation happens under one lock.
    """

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / SESSIONS_FILE

        self._sessions: Dict[int, Session] = {}
        self._recordings: Dict[str, Recording] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """
        Load persisted sessions.

        Returns:
            Number of sessions loaded
        """
        try:
            data = read_json(self.path, default=None)
        except (OSError, ValueError) as e:
            logger.error(f"Could not load session store {self.path}: {e}")
            return 0

        if not isinstance(data, dict):
            return 0

        with self._lock:
            for entry in data.get("sessions", []):
                try:
                    session = Session.from_dict(entry)
                except (KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping malformed session record: {e}")
                    continue
                self._sessions[session.id] = session

            for entry in data.get("recordings", []):
                try:
                    recording = Recording.from_dict(entry)
                except (KeyError, ValueError, TypeError) as e:
                    logger.warning(f"Skipping malformed recording record: {e}")
                    continue
                self._recordings[recording.recording_id] = recording

            highest = max(self._sessions.keys(), default=0)
            self._next_id = max(int(data.get("next_id", 1)), highest + 1)
            count = len(self._sessions)

        logger.info(f"Loaded {count} sessions from {self.path}")
        return count

    def _persist_locked(self) -> None:
        document = {
            "next_id": self._next_id,
            "sessions": [s.to_dict() for s in self._sessions.values()],
            "recordings": [r.to_dict() for r in self._recordings.values()],
        }
        try:
            write_json_atomic(self.path, document)
        except OSError as e:
            logger.error(f"Failed to persist session store {self.path}: {e}")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def allocate_id(self) -> int:
        with self._lock:
            session_id = self._next_id
            self._next_id += 1
            return session_id

    def create_session(self, session: Session) -> Session:
        with self._lock:
            self._sessions[session.id] = session
            self._next_id = max(self._next_id, session.id + 1)
            self._persist_locked()
        return session

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def require_session(self, session_id: int) -> Session:
        """
        Raises:
            NotFoundError: Unknown session id
        """
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def update_session(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session
            self._persist_locked()

    def list_sessions(self) -> List[Session]:
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.id, reverse=True)

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------

    def add_recording(self, recording: Recording) -> None:
        with self._lock:
            self._recordings[recording.recording_id] = recording
            self._persist_locked()

    def update_recording(self, recording: Recording) -> None:
        self.add_recording(recording)

    def get_recording(self, recording_id: str) -> Optional[Recording]:
        with self._lock:
            return self._recordings.get(recording_id)

    def list_recordings(self, session_id: Optional[int] = None) -> List[Recording]:
        with self._lock:
            recordings = list(self._recordings.values())
        if session_id is not None:
            recordings = [r for r in recordings if r.session_id == session_id]
        return sorted(recordings, key=lambda r: r.start_time)

    # ------------------------------------------------------------------
    # Per-session documents
    # ------------------------------------------------------------------

    def register_recording_file(self, session: Session, path: Path, camera_id: str) -> bool:
        """
        Record an output file in the session's session_files.json.

        Args:
            session: Owning session (must have storage_path)
            path: Recording file
            camera_id: Camera that produced it

        Returns:
            True if added, False if already registered (or no storage path)
        """
        if session.storage_path is None:
            return False

        manifest_path = session.storage_path / SESSION_FILES_FILE
        with self._lock:
            try:
                manifest = read_json(manifest_path, default=None)
            except (OSError, ValueError) as e:
                logger.warning(f"Rebuilding unreadable {manifest_path}: {e}")
                manifest = None

            if not isinstance(manifest, dict):
                manifest = {}
            manifest.setdefault("recordings", [])
            manifest.setdefault("sensorData", [])

            target = str(path)
            if any(entry.get("path") == target for entry in manifest["recordings"]):
                return False

            manifest["recordings"].append({
                "path": target,
                "camera": camera_id,
                "registeredAt": iso_now(),
            })
            try:
                write_json_atomic(manifest_path, manifest)
            except OSError as e:
                logger.error(f"Failed to register recording file for session {session.id}: {e}")
                return False

        logger.info(f"Registered recording file for session {session.id}: {target}")
        return True

    def read_session_files(self, session: Session) -> Dict[str, Any]:
        if session.storage_path is None:
            return {"recordings": [], "sensorData": []}
        try:
            manifest = read_json(session.storage_path / SESSION_FILES_FILE, default=None)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable session_files.json for session {session.id}: {e}")
            manifest = None
        if not isinstance(manifest, dict):
            manifest = {}
        manifest.setdefault("recordings", [])
        manifest.setdefault("sensorData", [])
        return manifest

    def write_session_metadata(self, session: Session) -> Optional[Path]:
        """
        Write session_metadata.json into the session directory.

        Returns:
            Path written, or None on failure
        """
        if session.storage_path is None:
            return None

        recordings = self.list_recordings(session.id)
        document = {
            "id": session.id,
            "name": session.name,
            "description": session.description,
            "startTime": session.start_time.isoformat(),
            "endTime": session.end_time.isoformat() if session.end_time else None,
            "status": session.status.value,
            "selectedSensors": session.selected_sensors,
            "selectedCameras": session.selected_cameras,
            "metadata": session.metadata,
            "recordings": [r.to_dict() for r in recordings],
        }
        path = session.storage_path / SESSION_METADATA_FILE
        try:
            write_json_atomic(path, document)
        except OSError as e:
            logger.error(f"Failed to write session metadata for session {session.id}: {e}")
            return None
        return path
