"""
Session Archiver

Bundles a session's located artifacts into one zip archive.

ARCHIVE LAYOUT:
- recordings/: video files
- sensors/: sensor series and bus traffic logs
- session_<id>/ prefix on every entry when namespacing is requested
- README.txt: human-readable manifest (always present)
- AllData.json: consolidated sensor data (always present)

CRITICAL CONSTRAINTS:
- Read-only with respect to session storage
- An unreadable artifact is skipped and listed as omitted in the README
- Zero artifacts still produce a valid manifest-only archive
- Cancellation (threading.Event) deletes the partial archive
"""

import json
import tempfile
import threading
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from loguru import logger

from .config import CaptureConfig
from .errors import ExportCancelled
from .fileio import iso_now
from .locator import (
    KIND_METADATA,
    KIND_RECORDING,
    KIND_SENSOR,
    Artifact,
    LocateResult,
)
from .session import Session
from .types import ExportStatus


ALL_DATA_NAME = "AllData.json"
README_NAME = "README.txt"


@dataclass
class ExportProgress:
    """
    Progress of one archive build.

    Attributes:
        total: Entries to write (artifacts + manifest files)
        processed: Entries written or skipped so far
        status: ExportStatus
        message: Last step description
        error: Failure reason (status ERROR only)
    """
    total: int = 0
    processed: int = 0
    status: ExportStatus = ExportStatus.PENDING
    message: str = ""
    error: Optional[str] = None
    updated_at: str = field(default_factory=iso_now)

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0 if self.status == ExportStatus.COMPLETED else 0.0
        return round(100.0 * self.processed / self.total, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "status": self.status.value,
            "message": self.message,
            "error": self.error,
            "percent": self.percent,
            "updated_at": self.updated_at,
        }


class ExportProgressTracker:
    """Thread-safe progress records keyed by session id."""

    def __init__(self):
        self._progress: Dict[int, ExportProgress] = {}
        self._lock = threading.Lock()

    def start(self, session_id: int, total: int) -> None:
        with self._lock:
            self._progress[session_id] = ExportProgress(
                total=total, status=ExportStatus.PROCESSING, message="Building archive"
            )

    def advance(self, session_id: int, message: str) -> None:
        with self._lock:
            progress = self._progress.get(session_id)
            if progress is None:
                return
            progress.processed += 1
            progress.message = message
            progress.updated_at = iso_now()

    def complete(self, session_id: int, message: str = "Archive ready") -> None:
        with self._lock:
            progress = self._progress.get(session_id)
            if progress is None:
                return
            progress.processed = progress.total
            progress.status = ExportStatus.COMPLETED
            progress.message = message
            progress.updated_at = iso_now()

    def fail(self, session_id: int, error: str) -> None:
        with self._lock:
            progress = self._progress.setdefault(session_id, ExportProgress())
            progress.status = ExportStatus.ERROR
            progress.error = error
            progress.message = "Archive failed"
            progress.updated_at = iso_now()

    def get(self, session_id: int) -> Optional[ExportProgress]:
        with self._lock:
            progress = self._progress.get(session_id)
            if progress is None:
                return None
            return ExportProgress(**progress.__dict__)


class Archiver:
    """
    Builds session archives from LocateResults.
    """

    def __init__(
        self,
        config: CaptureConfig,
        progress: Optional[ExportProgressTracker] = None,
    ):
        self.config = config
        self.progress = progress or ExportProgressTracker()
        self.temp_dir = Path(config.storage.temp_dir)

    def build_archive(
        self,
        session: Session,
        located: LocateResult,
        destination: Optional[Path] = None,
        namespace: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """
        Write the archive for a session.

        Args:
            session: Session being exported
            located: Artifacts and omissions from the locator
            destination: Output path (defaults to a temp file)
            namespace: Prefix entries with session_<id>/ (defaults to config)
            cancel_event: Set to abort the build

        Returns:
            Path to the finished zip

        Raises:
            ExportCancelled: cancel_event was set
            OSError: Destination could not be written
        """
        if namespace is None:
            namespace = self.config.export.namespace_by_session
        prefix = f"session_{session.id}/" if namespace else ""

        if destination is None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            handle = tempfile.NamedTemporaryFile(
                prefix=f"session_{session.id}_", suffix=".zip",
                dir=self.temp_dir, delete=False,
            )
            handle.close()
            destination = Path(handle.name)
        destination = Path(destination)

        artifacts = [a for a in located.artifacts if a.path.name != ALL_DATA_NAME]
        existing_all_data = next(
            (a for a in located.artifacts if a.path.name == ALL_DATA_NAME), None
        )
        self.progress.start(session.id, len(artifacts) + 2)

        written: List[Tuple[str, Artifact]] = []
        omitted: List[Tuple[str, str]] = [
            (m.name, m.reason or "not found") for m in located.missing
        ]
        used_names: Set[str] = set()

        try:
            with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for artifact in artifacts:
                    _check_cancel(cancel_event, session.id)
                    arcname = _unique(prefix + _entry_name(artifact), used_names)
                    compress = (
                        zipfile.ZIP_STORED if artifact.kind == KIND_RECORDING
                        else zipfile.ZIP_DEFLATED
                    )
                    try:
                        zf.write(artifact.path, arcname, compress_type=compress)
                        written.append((arcname, artifact))
                    except OSError as e:
                        used_names.discard(arcname)
                        omitted.append((artifact.path.name, f"unreadable: {e}"))
                        logger.warning(
                            f"Session {session.id}: skipping unreadable artifact {artifact.path}: {e}"
                        )
                    self.progress.advance(session.id, f"Added {artifact.path.name}")

                _check_cancel(cancel_event, session.id)
                all_data = self._all_data(session, existing_all_data, written)
                zf.writestr(prefix + ALL_DATA_NAME, json.dumps(all_data, indent=2, default=str))
                self.progress.advance(session.id, f"Added {ALL_DATA_NAME}")

                zf.writestr(prefix + README_NAME, self.render_readme(session, written, omitted))
                self.progress.advance(session.id, f"Added {README_NAME}")
        except ExportCancelled:
            destination.unlink(missing_ok=True)
            self.progress.fail(session.id, "cancelled")
            logger.info(f"Export of session {session.id} cancelled")
            raise
        except Exception as e:
            destination.unlink(missing_ok=True)
            self.progress.fail(session.id, str(e))
            logger.error(f"Export of session {session.id} failed: {e}")
            raise

        self.progress.complete(session.id)
        logger.info(
            f"Archive for session {session.id} written to {destination}: "
            f"{len(written)} artifacts, {len(omitted)} omitted"
        )
        return destination

    def _all_data(
        self,
        session: Session,
        existing: Optional[Artifact],
        written: List[Tuple[str, Artifact]],
    ) -> Dict[str, Any]:
        """Reuse the session's AllData.json, else consolidate sensor JSON files."""
        if existing is not None:
            try:
                with open(existing.path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"Session {session.id}: AllData.json unreadable, rebuilding: {e}")

        sensors: Dict[str, Any] = {}
        for _, artifact in written:
            if artifact.kind != KIND_SENSOR or artifact.path.suffix.lower() != ".json":
                continue
            try:
                with open(artifact.path, "r", encoding="utf-8") as f:
                    sensors[artifact.path.stem] = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"Session {session.id}: skipping sensor file {artifact.path}: {e}")

        return {
            "sessionId": session.id,
            "name": session.name,
            "startTime": session.start_time.isoformat(),
            "endTime": session.end_time.isoformat() if session.end_time else None,
            "selectedSensors": session.selected_sensors,
            "sensors": sensors,
            "statistics": {
                "sensorsCount": len(sensors),
                "generatedAt": iso_now(),
            },
        }

    def render_readme(
        self,
        session: Session,
        written: List[Tuple[str, Artifact]],
        omitted: List[Tuple[str, str]],
    ) -> str:
        meta = session.metadata or {}
        participants = meta.get("participants")
        tags = meta.get("tags")

        duration = "N/A"
        seconds = session.duration_seconds()
        if seconds is not None:
            total = int(seconds)
            duration = f"{total // 3600}h {(total % 3600) // 60}m {total % 60}s"

        lines = [
            "Session Capture - Session Export",
            "================================",
            "",
            f"Session ID: {session.id}",
            f"Session Name: {session.name}",
            f"Export Date: {datetime.now(timezone.utc).isoformat()}",
            "",
            "Session Details:",
            f"- Researcher: {meta.get('researcher') or 'Not specified'}",
            f"- Participants: {', '.join(participants) if isinstance(participants, list) and participants else 'None'}",
            f"- Tags: {', '.join(tags) if isinstance(tags, list) and tags else 'None'}",
            f"- Start Time: {session.start_time.isoformat()}",
            f"- End Time: {session.end_time.isoformat() if session.end_time else 'N/A'}",
            f"- Duration: {duration}",
            f"- Description: {session.description or 'No description provided'}",
            "",
        ]

        if session.selected_cameras:
            lines.append("Selected Cameras:")
            for camera_id in session.selected_cameras:
                camera = self.config.get_camera(camera_id)
                label = camera.name if camera else "Unknown camera"
                lines.append(f"- {label} (id {camera_id})")
            lines.append("")

        lines.append("Selected Sensors:")
        if session.selected_sensors:
            lines += [f"- {sensor}" for sensor in session.selected_sensors]
        else:
            lines.append("- all (capture-all session)")
        lines.append("")

        lines += ["Notes:", meta.get("notes") or "No notes provided", ""]

        lines.append(f"Contents ({len(written)} files):")
        for arcname, artifact in written:
            size = artifact.size()
            details = [f"{size} bytes" if size is not None else "size unknown"]
            if artifact.camera_id:
                details.append(f"camera {artifact.camera_id}")
            if artifact.strategy not in ("sweep", ""):
                details.append(f"found by {artifact.strategy}")
            lines.append(f"- {arcname} ({', '.join(details)})")
        if not written:
            lines.append("- (no artifacts found)")
        lines.append("")

        if omitted:
            lines.append(f"Omitted ({len(omitted)}):")
            lines += [f"- {name}: {reason}" for name, reason in omitted]
            lines.append("")

        lines += [
            "Layout:",
            "- /recordings: video recordings",
            "- /sensors: sensor data and bus traffic (.csv, .json, .log)",
            f"- {ALL_DATA_NAME}: every sensor's full data series",
            "",
        ]
        return "\n".join(lines)


def iter_archive(path: Path, chunk_size: int = 64 * 1024, delete: bool = True) -> Iterator[bytes]:
    """
    Stream an archive in chunks, deleting it afterwards.

    The file is removed even when the consumer stops early.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
    finally:
        if delete:
            path.unlink(missing_ok=True)


def _entry_name(artifact: Artifact) -> str:
    if artifact.kind == KIND_RECORDING:
        return f"recordings/{artifact.path.name}"
    if artifact.kind == KIND_METADATA:
        return artifact.path.name
    return f"sensors/{artifact.path.name}"


def _unique(name: str, used: Set[str]) -> str:
    if name not in used:
        used.add(name)
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    counter = 2
    while True:
        candidate = f"{stem}_{counter}.{ext}" if ext else f"{stem}_{counter}"
        if candidate not in used:
            used.add(candidate)
            return candidate
        counter += 1


def _check_cancel(cancel_event: Optional[threading.Event], session_id: int) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ExportCancelled(f"Export of session {session_id} cancelled")
