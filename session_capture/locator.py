"""
Artifact Locator

Recovers every file that plausibly belongs to a session, tolerating the
historically inconsistent places recordings and sensor files were written.

CANDIDATE ROOTS (most to least authoritative):
1. sessions/<id>/recordings (current layout)
2. shared recordings directory (legacy encoder output)
3. legacy per-session dirs: Session<id>, session_<id>, session-<id>
   under the sessions dir and every configured legacy root
4. generic data dirs (data_dir, uploads_dir)

RECORDING STRATEGIES (tried in order, first hit wins):
1. ExactNameStrategy: stored path, then stored basename in every root
2. PatternStrategy: camera/session tokens with -, _ and no separator,
   plus the bare camera id and c<id> between separators
3. RecursiveScoreStrategy: bounded-depth walk, best score wins

CRITICAL:
- Read-only: the locator never moves, renames or deletes anything
- Exhaustion is reported as a MissingArtifact, never as an exception
- Results are de-duplicated by resolved path
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from loguru import logger

from .config import CaptureConfig
from .errors import NotFoundError
from .session import Session
from .store import SESSION_FILES_FILE, SESSION_METADATA_FILE, SessionStore


KIND_RECORDING = "recording"
KIND_SENSOR = "sensor"
KIND_TRAFFIC = "traffic"
KIND_METADATA = "metadata"

SENSOR_EXTENSIONS = (".json", ".csv")
SESSION_ROOT_DOCUMENTS = ("AllData.json", SESSION_METADATA_FILE, SESSION_FILES_FILE)

_SESSION_REF = re.compile(r"sess(?:ion)?[-_]?\d+")


@dataclass
class Artifact:
    """A file attributed to a session."""
    path: Path
    kind: str
    camera_id: Optional[str] = None
    sensor_id: Optional[str] = None
    strategy: str = "sweep"
    score: int = 0

    @property
    def name(self) -> str:
        return self.path.name

    def size(self) -> Optional[int]:
        try:
            return self.path.stat().st_size
        except OSError:
            return None


@dataclass
class MissingArtifact:
    """An expected file no strategy could find."""
    name: str
    kind: str
    camera_id: Optional[str] = None
    reason: str = ""


@dataclass
class LocateResult:
    artifacts: List[Artifact] = field(default_factory=list)
    missing: List[MissingArtifact] = field(default_factory=list)

    @property
    def paths(self) -> List[Path]:
        return [a.path for a in self.artifacts]

    def of_kind(self, kind: str) -> List[Artifact]:
        return [a for a in self.artifacts if a.kind == kind]


@dataclass
class RecordingTarget:
    """An expected recording: from stored metadata or a selected camera."""
    camera_id: str
    stored_path: Optional[Path] = None
    prefix: Optional[str] = None

    @property
    def label(self) -> str:
        return self.stored_path.name if self.stored_path else f"camera {self.camera_id} recording"


def session_tokens(session_id: int) -> List[str]:
    sid = str(session_id)
    return [f"session{sid}", f"session_{sid}", f"session-{sid}", f"sess{sid}"]


def camera_tokens(camera_id: str) -> List[str]:
    cid = str(camera_id).lower()
    tokens = [f"camera{cid}", f"camera_{cid}", f"camera-{cid}", f"cam{cid}", f"cam_{cid}", f"cam-{cid}"]
    # Bare id and c<id> only count between separators: rec_7_..., c7-...
    for left in "-_":
        for right in "-_":
            tokens.append(f"{left}{cid}{right}")
            tokens.append(f"{left}c{cid}{right}")
    return tokens


def matches_camera(name: str, tokens: List[str]) -> bool:
    """
    Camera token match on a filename.

    Session references are removed first so that `session_1_cam2` is not
    taken for camera 1. A leading separator is assumed so separator-bound
    tokens also match at the start of the name.
    """
    stripped = _SESSION_REF.sub("", name.lower())
    return _contains_token(f"_{stripped}", tokens)


def _contains_token(name: str, tokens: List[str]) -> bool:
    """Token match that does not let session1 match session12."""
    lowered = name.lower()
    for token in tokens:
        start = lowered.find(token)
        while start != -1:
            end = start + len(token)
            if end == len(lowered) or not lowered[end].isdigit():
                return True
            start = lowered.find(token, start + 1)
    return False


class SearchContext:
    """Per-locate state shared by the strategies."""

    def __init__(
        self,
        session: Session,
        recording_roots: List[Path],
        all_roots: List[Path],
        extensions: Tuple[str, ...],
        max_depth: int,
        window_slack: timedelta,
    ):
        self.session = session
        self.recording_roots = recording_roots
        self.all_roots = all_roots
        self.extensions = extensions
        self.max_depth = max_depth
        self.window_slack = window_slack
        self.claimed: Set[Path] = set()

    def is_recording_file(self, path: Path) -> bool:
        return path.suffix.lower() in self.extensions

    def files_in(self, root: Path) -> Iterator[Path]:
        try:
            entries = sorted(root.iterdir())
        except OSError:
            return
        for entry in entries:
            if entry.is_file() and self.is_recording_file(entry):
                yield entry

    def in_session_window(self, path: Path) -> bool:
        try:
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            return False
        start = self.session.start_time - self.window_slack
        end = (self.session.end_time or datetime.now(timezone.utc)) + self.window_slack
        return start <= mtime <= end

    def unclaimed(self, path: Path) -> bool:
        return _resolve(path) not in self.claimed


class RecordingStrategy:
    """Base class: find(ctx, target) returns (path, score) or None."""

    name = "base"

    def find(self, ctx: SearchContext, target: RecordingTarget) -> Optional[Tuple[Path, int]]:
        raise NotImplementedError


class ExactNameStrategy(RecordingStrategy):
    name = "exact"

    def find(self, ctx, target):
        if target.stored_path is None:
            return None

        if target.stored_path.is_file() and ctx.unclaimed(target.stored_path):
            return target.stored_path, 3

        basename = target.stored_path.name
        for root in ctx.all_roots:
            candidate = root / basename
            if candidate.is_file() and ctx.unclaimed(candidate):
                return candidate, 3
        return None


class PatternStrategy(RecordingStrategy):
    """
    Filename token match in every root (non-recursive).

    Pass 1: camera token and session token.
    Pass 2: camera token only, restricted to the session time window.
    """

    name = "pattern"

    def find(self, ctx, target):
        cam = camera_tokens(target.camera_id)
        if target.prefix:
            cam = cam + [target.prefix.lower()]
        sess = session_tokens(ctx.session.id)

        both: List[Path] = []
        camera_only: List[Path] = []
        for root in ctx.recording_roots:
            for path in ctx.files_in(root):
                if not ctx.unclaimed(path) or not matches_camera(path.name, cam):
                    continue
                if _contains_token(path.name, sess):
                    both.append(path)
                elif ctx.in_session_window(path):
                    camera_only.append(path)

        if both:
            return _newest(both), 2
        if camera_only:
            return _newest(camera_only), 1
        return None


class RecursiveScoreStrategy(RecordingStrategy):
    """
    Bounded-depth walk scoring files by matched criteria.

    score = |{camera id, session id, camera prefix} matched|; a file must
    match the camera id or prefix to qualify, and without a session token
    it must also fall inside the session time window. Highest score wins,
    ties go to the newest file.
    """

    name = "recursive"

    def find(self, ctx, target):
        cam = camera_tokens(target.camera_id)
        sess = session_tokens(ctx.session.id)
        prefix = target.prefix.lower() if target.prefix else None

        best: Optional[Tuple[int, float, Path]] = None
        for root in ctx.all_roots:
            for path in _walk(root, ctx.max_depth):
                if not ctx.is_recording_file(path) or not ctx.unclaimed(path):
                    continue
                name = path.name.lower()
                camera_hit = matches_camera(name, cam)
                prefix_hit = bool(prefix) and prefix in name
                if not (camera_hit or prefix_hit):
                    continue
                session_hit = _contains_token(name, sess)
                if not session_hit and not ctx.in_session_window(path):
                    continue
                score = int(camera_hit) + int(prefix_hit) + int(session_hit)
                try:
                    mtime = path.stat().st_mtime
                except OSError:
                    continue
                if best is None or (score, mtime) > (best[0], best[1]):
                    best = (score, mtime, path)

        if best is None:
            return None
        return best[2], best[0]


DEFAULT_STRATEGIES: List[RecordingStrategy] = [
    ExactNameStrategy(),
    PatternStrategy(),
    RecursiveScoreStrategy(),
]


class ArtifactLocator:
    """
    Finds the files of a session across current and legacy layouts.
    """

    def __init__(
        self,
        config: CaptureConfig,
        store: SessionStore,
        strategies: Optional[List[RecordingStrategy]] = None,
    ):
        self.config = config
        self.store = store
        self.strategies = list(strategies or DEFAULT_STRATEGIES)

        storage = config.storage
        self.sessions_dir = Path(storage.sessions_dir)
        self.recordings_dir = Path(storage.recordings_dir)
        self.data_dir = Path(storage.data_dir)
        self.uploads_dir = Path(storage.uploads_dir)
        self.legacy_roots = [Path(p) for p in storage.legacy_roots]

    # ------------------------------------------------------------------
    # Roots
    # ------------------------------------------------------------------

    def session_dirs(self, session: Session) -> List[Path]:
        """Canonical session dir first, then legacy per-session dirs."""
        dirs: List[Path] = []
        if session.storage_path is not None:
            dirs.append(Path(session.storage_path))
        dirs.append(self.sessions_dir / str(session.id))

        sid = session.id
        for root in [self.sessions_dir] + self.legacy_roots:
            for name in (f"Session{sid}", f"session_{sid}", f"session-{sid}", str(sid)):
                dirs.append(root / name)
        return _existing_unique(dirs)

    def recording_roots(self, session: Session) -> List[Path]:
        candidates: List[Path] = []
        session_dirs = self.session_dirs(session)
        if session_dirs:
            candidates.append(session_dirs[0] / "recordings")
        candidates.append(self.recordings_dir)
        for directory in session_dirs:
            candidates.append(directory / "recordings")
            candidates.append(directory)
        candidates += [self.data_dir, self.uploads_dir]
        return _existing_unique(candidates)

    def all_roots(self, session: Session) -> List[Path]:
        return _existing_unique(
            self.recording_roots(session) + [self.sessions_dir] + self.legacy_roots
        )

    # ------------------------------------------------------------------
    # Locate
    # ------------------------------------------------------------------

    def locate(self, session_id: int) -> List[Path]:
        """
        Paths of every artifact of a session.

        Raises:
            NotFoundError: Unknown session id
        """
        return self.locate_artifacts(session_id).paths

    def locate_artifacts(self, session_id: int) -> LocateResult:
        """
        Artifacts plus the expected files that could not be found.

        Raises:
            NotFoundError: Unknown session id
        """
        session = self.store.require_session(session_id)
        result = LocateResult()
        seen: Set[Path] = set()

        ctx = SearchContext(
            session,
            recording_roots=self.recording_roots(session),
            all_roots=self.all_roots(session),
            extensions=tuple(e.lower() for e in self.config.export.recording_extensions),
            max_depth=self.config.export.search_depth,
            window_slack=timedelta(seconds=self.config.export.time_window_slack_seconds),
        )

        for target in self._recording_targets(session):
            try:
                artifact = self._find_recording(ctx, target)
            except NotFoundError as e:
                result.missing.append(MissingArtifact(
                    name=target.label, kind=KIND_RECORDING,
                    camera_id=target.camera_id, reason=str(e),
                ))
                continue
            ctx.claimed.add(_resolve(artifact.path))
            _add(result, seen, artifact)

        for artifact in self._sweep_recordings(session, ctx):
            _add(result, seen, artifact)

        for artifact in self._sensor_artifacts(session):
            _add(result, seen, artifact)

        logger.info(
            f"Located {len(result.artifacts)} artifacts for session {session_id} "
            f"({len(result.missing)} missing)"
        )
        return result

    def _recording_targets(self, session: Session) -> List[RecordingTarget]:
        targets: List[RecordingTarget] = []
        covered: Set[str] = set()

        for recording in self.store.list_recordings(session.id):
            camera = self.config.get_camera(recording.camera_id)
            targets.append(RecordingTarget(
                camera_id=recording.camera_id,
                stored_path=Path(recording.output_path),
                prefix=camera.file_prefix if camera else None,
            ))
            covered.add(recording.camera_id)

        for manifest_entry in self.store.read_session_files(session)["recordings"]:
            path = manifest_entry.get("path")
            camera_id = str(manifest_entry.get("camera") or "")
            if not path or any(t.stored_path == Path(path) for t in targets):
                continue
            camera = self.config.get_camera(camera_id)
            targets.append(RecordingTarget(
                camera_id=camera_id, stored_path=Path(path),
                prefix=camera.file_prefix if camera else None,
            ))
            covered.add(camera_id)

        for camera_id in session.selected_cameras:
            if camera_id in covered:
                continue
            camera = self.config.get_camera(camera_id)
            targets.append(RecordingTarget(
                camera_id=camera_id, prefix=camera.file_prefix if camera else None,
            ))
        return targets

    def _find_recording(self, ctx: SearchContext, target: RecordingTarget) -> Artifact:
        """
        Run the strategies in order.

        Raises:
            NotFoundError: Every strategy came up empty
        """
        for strategy in self.strategies:
            found = strategy.find(ctx, target)
            if found is None:
                continue
            path, score = found
            logger.debug(
                f"Session {ctx.session.id}: {target.label} found by {strategy.name} at {path}"
            )
            return Artifact(
                path=path, kind=KIND_RECORDING, camera_id=target.camera_id,
                strategy=strategy.name, score=score,
            )

        tried = ", ".join(s.name for s in self.strategies)
        raise NotFoundError(f"no match for {target.label} ({tried})")

    def _sweep_recordings(self, session: Session, ctx: SearchContext) -> Iterator[Artifact]:
        session_dirs = self.session_dirs(session)
        for directory in session_dirs:
            for path in ctx.files_in(directory / "recordings"):
                yield Artifact(path=path, kind=KIND_RECORDING, strategy="sweep")

        tokens = session_tokens(session.id)
        for path in ctx.files_in(self.recordings_dir):
            if _contains_token(path.name, tokens):
                yield Artifact(path=path, kind=KIND_RECORDING, strategy="sweep")

    def _sensor_artifacts(self, session: Session) -> Iterator[Artifact]:
        for directory in self.session_dirs(session):
            for sub, kind in (("sensor_data", KIND_SENSOR), ("sensors", KIND_SENSOR), ("mqtt_data", KIND_TRAFFIC)):
                for path in _files_with(directory / sub, SENSOR_EXTENSIONS + ((".log",) if kind == KIND_TRAFFIC else ())):
                    sensor_id = path.stem if kind == KIND_SENSOR else None
                    yield Artifact(path=path, kind=kind, sensor_id=sensor_id)

            for name in SESSION_ROOT_DOCUMENTS:
                path = directory / name
                if path.is_file():
                    yield Artifact(path=path, kind=KIND_METADATA)

        tokens = session_tokens(session.id)
        for directory in (self.data_dir, self.data_dir / "sensor_data"):
            for path in _files_with(directory, SENSOR_EXTENSIONS):
                if _contains_token(path.name, tokens):
                    yield Artifact(path=path, kind=KIND_SENSOR, sensor_id=path.stem)


def _add(result: LocateResult, seen: Set[Path], artifact: Artifact) -> None:
    key = _resolve(artifact.path)
    if key in seen:
        return
    seen.add(key)
    result.artifacts.append(artifact)


def _resolve(path: Path) -> Path:
    try:
        return path.resolve()
    except OSError:
        return path.absolute()


def _existing_unique(paths: List[Path]) -> List[Path]:
    result: List[Path] = []
    seen: Set[Path] = set()
    for path in paths:
        if not path.is_dir():
            continue
        key = _resolve(path)
        if key in seen:
            continue
        seen.add(key)
        result.append(path)
    return result


def _files_with(directory: Path, extensions: Tuple[str, ...]) -> List[Path]:
    if not directory.is_dir():
        return []
    try:
        return sorted(
            p for p in directory.iterdir()
            if p.is_file() and p.suffix.lower() in extensions and not p.name.endswith(".tmp")
        )
    except OSError as e:
        logger.warning(f"Cannot list {directory}: {e}")
        return []


def _walk(root: Path, max_depth: int) -> Iterator[Path]:
    """Files under root, at most max_depth directory levels down."""
    root_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        depth = len(Path(dirpath).parts) - root_depth
        if depth >= max_depth:
            dirnames[:] = []
        for filename in filenames:
            yield Path(dirpath) / filename


def _newest(paths: List[Path]) -> Path:
    return max(paths, key=lambda p: p.stat().st_mtime)
