"""
Recording Process Supervisor

Spawns and supervises one external encoder process (ffmpeg) per camera.

WHAT THIS IS:
- Process map keyed by camera_id (lock-guarded, held only for mutation)
- One monitor thread per process parsing `-progress` output
- One stderr thread per process keeping an error tail
- Exit and metrics observers (the session registry subscribes)

LIFECYCLE (per recording):
    STARTING --first output line--> RECORDING
    STARTING | RECORDING --exit 0 or requested stop--> COMPLETED
    STARTING | RECORDING --non-zero exit--> ERROR

STOP SEQUENCE (bounded):
1. Send "q" on stdin, wait stop_grace_seconds
2. terminate(), wait kill_timeout_seconds
3. kill()

FAILURE SEMANTICS:
- A crashed encoder marks only its own recording ERROR
- Observer failures are logged and never affect the process map
"""

import subprocess
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, List, Optional

from loguru import logger

from .config import CameraConfig, RecorderSettings
from .errors import ConflictError, ProcessError
from .recording import ProgressParser, Recording
from .types import RecordingStatus


CommandFactory = Callable[[CameraConfig, str, Path], List[str]]
RecordingObserver = Callable[[Recording], None]

STDERR_TAIL_LINES = 20


def build_output_name(
    camera: CameraConfig,
    session_id: Optional[int] = None,
    now: Optional[datetime] = None,
    extension: str = ".mp4",
) -> str:
    """
    Output filename: `<prefix>[_session<id>]-<YYYYmmdd-HHMMSS>.mp4`.

    The session token lets the artifact locator recover the file even
    when it ends up outside the session directory.
    """
    now = now or datetime.now(timezone.utc)
    session_part = f"_session{session_id}" if session_id is not None else ""
    return f"{camera.file_prefix}{session_part}-{now.strftime('%Y%m%d-%H%M%S')}{extension}"


class FfmpegCommandBuilder:
    """Builds the encoder command line from RecorderSettings."""

    def __init__(self, settings: RecorderSettings):
        self.settings = settings

    def __call__(self, camera: CameraConfig, stream_url: str, output_path: Path) -> List[str]:
        s = self.settings
        cmd = [s.ffmpeg_path, "-hide_banner", "-loglevel", "error"]
        if stream_url.startswith("rtsp"):
            cmd += ["-rtsp_transport", "tcp"]
        cmd += [
            "-i", stream_url,
            "-c:v", s.video_codec,
            "-profile:v", s.video_profile,
            "-preset", s.preset,
            "-pix_fmt", "yuv420p",
            "-force_key_frames", f"expr:gte(t,n_forced*{s.keyframe_interval_seconds})",
            "-an",
            "-movflags", "+faststart",
            "-progress", "pipe:1",
        ]
        cmd += list(s.extra_args)
        cmd += ["-y", str(output_path)]
        return cmd


@dataclass
class _ProcessHandle:
    recording: Recording
    process: subprocess.Popen
    started_monotonic: float
    monitor: Optional[threading.Thread] = None
    stderr_reader: Optional[threading.Thread] = None
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    done: threading.Event = field(default_factory=threading.Event)


class RecordingSupervisor:
    """
    Supervises encoder processes, one per camera.

    CRITICAL:
    - At most one live process per camera_id
    - stop() is idempotent and never blocks beyond the bounded grace
    - Observers are called from monitor threads
    """

    def __init__(
        self,
        settings: RecorderSettings,
        recordings_dir: str,
        command_factory: Optional[CommandFactory] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            settings: Encoder binary, codec and stop timeouts
            recordings_dir: Shared directory for standalone recordings
            command_factory: Builds argv for (camera, url, output);
                defaults to FfmpegCommandBuilder
        """
        self.settings = settings
        self.recordings_dir = Path(recordings_dir)
        self.command_factory = command_factory or FfmpegCommandBuilder(settings)

        self._processes: Dict[str, _ProcessHandle] = {}
        self._last: Dict[str, Recording] = {}
        self._lock = threading.Lock()

        self._exit_observers: List[RecordingObserver] = []
        self._metrics_observers: List[RecordingObserver] = []

    def add_exit_observer(self, observer: RecordingObserver) -> None:
        self._exit_observers.append(observer)

    def add_metrics_observer(self, observer: RecordingObserver) -> None:
        self._metrics_observers.append(observer)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(
        self,
        camera: CameraConfig,
        session_id: Optional[int] = None,
        output_dir: Optional[Path] = None,
    ) -> Recording:
        """
        Spawn an encoder for a camera.

        Args:
            camera: Camera to record
            session_id: Owning session (None for standalone)
            output_dir: Destination directory (defaults to recordings_dir)

        Returns:
            Recording in STARTING state

        Raises:
            ConflictError: Camera already has a live encoder
            ProcessError: Stream URL unresolvable or spawn failed
        """
        with self._lock:
            existing = self._processes.get(camera.id)
            if existing is not None and existing.process.poll() is None:
                raise ConflictError(f"Camera {camera.id} is already recording")

        directory = Path(output_dir) if output_dir else self.recordings_dir
        output_path = directory / build_output_name(
            camera, session_id, extension=self.settings.output_extension
        )
        recording = Recording(camera_id=camera.id, output_path=output_path, session_id=session_id)

        try:
            stream_url = camera.resolve_stream_url()
            directory.mkdir(parents=True, exist_ok=True)
            cmd = self.command_factory(camera, stream_url, output_path)
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except (OSError, ValueError) as e:
            self._fail_spawn(recording, str(e))
            raise ProcessError(camera.id, str(e))

        recording.pid = process.pid
        handle = _ProcessHandle(recording, process, time.monotonic())

        with self._lock:
            existing = self._processes.get(camera.id)
            if existing is not None and existing.process.poll() is None:
                conflict = True
            else:
                conflict = False
                self._processes[camera.id] = handle
                self._last[camera.id] = recording

        if conflict:
            self._stop_process(handle)
            raise ConflictError(f"Camera {camera.id} is already recording")

        handle.stderr_reader = threading.Thread(
            target=self._read_stderr, args=(handle,),
            name=f"encoder-stderr-{camera.id}", daemon=True,
        )
        handle.monitor = threading.Thread(
            target=self._monitor, args=(handle,),
            name=f"encoder-monitor-{camera.id}", daemon=True,
        )
        handle.stderr_reader.start()
        handle.monitor.start()

        logger.info(
            f"Started encoder for camera {camera.id} (pid {process.pid}, "
            f"session {session_id}) from {camera.masked_stream_url()} -> {output_path}"
        )
        return recording

    def _fail_spawn(self, recording: Recording, reason: str) -> None:
        recording.status = RecordingStatus.ERROR
        recording.error = reason
        recording.end_time = datetime.now(timezone.utc)
        with self._lock:
            self._last[recording.camera_id] = recording
        logger.error(f"Failed to start encoder for camera {recording.camera_id}: {reason}")
        self._notify(self._exit_observers, recording, "exit")

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _monitor(self, handle: _ProcessHandle) -> None:
        recording = handle.recording
        parser = ProgressParser()
        last_broadcast = handle.started_monotonic

        try:
            for line in handle.process.stdout:
                if recording.status == RecordingStatus.STARTING:
                    recording.status = RecordingStatus.RECORDING
                    logger.info(f"Camera {recording.camera_id} is recording")

                block = parser.feed(line)
                if block is None:
                    continue

                ProgressParser.apply(block, recording.metrics)
                recording.metrics.consecutive_errors = 0

                now = time.monotonic()
                recording.metrics.uptime_seconds = now - handle.started_monotonic
                if now - last_broadcast >= self.settings.metrics_interval_seconds:
                    last_broadcast = now
                    self._notify(self._metrics_observers, recording, "metrics")
        except (OSError, ValueError) as e:
            logger.warning(f"Progress reader for camera {recording.camera_id} stopped: {e}")

        exit_code = handle.process.wait()
        if handle.stderr_reader is not None:
            handle.stderr_reader.join(timeout=2)
        self._finish(handle, exit_code)

    def _read_stderr(self, handle: _ProcessHandle) -> None:
        recording = handle.recording
        try:
            for line in handle.process.stderr:
                line = line.rstrip()
                if not line:
                    continue
                handle.stderr_tail.append(line)
                recording.metrics.consecutive_errors += 1
                logger.debug(f"Encoder camera {recording.camera_id}: {line}")
        except (OSError, ValueError) as e:
            logger.debug(f"stderr reader for camera {recording.camera_id} stopped: {e}")

    def _finish(self, handle: _ProcessHandle, exit_code: int) -> None:
        recording = handle.recording
        recording.exit_code = exit_code
        recording.end_time = datetime.now(timezone.utc)
        recording.metrics.uptime_seconds = time.monotonic() - handle.started_monotonic

        if exit_code == 0 or recording.stop_requested:
            recording.status = RecordingStatus.COMPLETED
            logger.info(
                f"Encoder for camera {recording.camera_id} finished "
                f"(exit {exit_code}, {recording.metrics.frames} frames)"
            )
        else:
            recording.status = RecordingStatus.ERROR
            tail = handle.stderr_tail[-1] if handle.stderr_tail else ""
            recording.error = tail or f"encoder exited with code {exit_code}"
            logger.error(
                f"Encoder for camera {recording.camera_id} exited with code {exit_code}: "
                f"{recording.error}"
            )

        with self._lock:
            if self._processes.get(recording.camera_id) is handle:
                del self._processes[recording.camera_id]

        # Observers run before waiters in stop() are released
        self._notify(self._exit_observers, recording, "exit")
        handle.done.set()

    def _notify(self, observers: Iterable[RecordingObserver], recording: Recording, kind: str) -> None:
        for observer in list(observers):
            try:
                observer(recording)
            except Exception as e:
                logger.error(f"Recording {kind} observer failed for camera {recording.camera_id}: {e}")

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self, camera_id: str) -> Optional[Recording]:
        """
        Stop a camera's encoder (idempotent).

        Args:
            camera_id: Camera to stop

        Returns:
            The final Recording, or None if nothing was running
        """
        with self._lock:
            handle = self._processes.get(camera_id)

        if handle is None:
            logger.debug(f"Stop for camera {camera_id} ignored: not recording")
            return None

        handle.recording.stop_requested = True
        logger.info(f"Stopping encoder for camera {camera_id} (pid {handle.process.pid})")
        self._stop_process(handle)

        # Monitor thread finalizes status once pipes close
        handle.done.wait(timeout=self.settings.kill_timeout_seconds)
        return handle.recording

    def _stop_process(self, handle: _ProcessHandle) -> None:
        proc = handle.process
        camera_id = handle.recording.camera_id
        if proc.poll() is not None:
            return

        try:
            if proc.stdin is not None:
                proc.stdin.write("q\n")
                proc.stdin.flush()
                proc.stdin.close()
        except (OSError, ValueError):
            pass

        try:
            proc.wait(timeout=self.settings.stop_grace_seconds)
            return
        except subprocess.TimeoutExpired:
            logger.warning(f"Encoder for camera {camera_id} ignored quit, terminating")

        try:
            proc.terminate()
            proc.wait(timeout=self.settings.kill_timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(f"Encoder for camera {camera_id} did not terminate, killing (pid {proc.pid})")
            proc.kill()
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.error(f"Encoder for camera {camera_id} survived kill (pid {proc.pid})")

    def stop_many(self, camera_ids: Iterable[str]) -> Dict[str, Optional[Recording]]:
        """Stop several encoders concurrently."""
        camera_ids = list(camera_ids)
        if not camera_ids:
            return {}
        with ThreadPoolExecutor(max_workers=min(8, len(camera_ids))) as pool:
            results = pool.map(self.stop, camera_ids)
            return dict(zip(camera_ids, results))

    def stop_all(self) -> Dict[str, Optional[Recording]]:
        with self._lock:
            camera_ids = list(self._processes.keys())
        if camera_ids:
            logger.info(f"Stopping all encoders: {', '.join(camera_ids)}")
        return self.stop_many(camera_ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_recording(self, camera_id: str) -> bool:
        with self._lock:
            handle = self._processes.get(camera_id)
        return handle is not None and handle.process.poll() is None

    def get_recording(self, camera_id: str) -> Optional[Recording]:
        """Live recording for a camera, else the most recent finished one."""
        with self._lock:
            handle = self._processes.get(camera_id)
            if handle is not None:
                return handle.recording
            return self._last.get(camera_id)

    def active_recordings(self) -> List[Recording]:
        with self._lock:
            return [h.recording for h in self._processes.values()]

    def wait(self, camera_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the camera's current encoder has been finalized."""
        with self._lock:
            handle = self._processes.get(camera_id)
        if handle is None:
            return True
        return handle.done.wait(timeout)
