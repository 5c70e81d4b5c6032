"""Tests for artifact discovery across current and legacy layouts."""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from session_capture.errors import NotFoundError
from session_capture.locator import (
    KIND_METADATA,
    KIND_RECORDING,
    KIND_SENSOR,
    KIND_TRAFFIC,
    ArtifactLocator,
    _contains_token,
    camera_tokens,
    matches_camera,
)
from session_capture.config import CameraConfig
from session_capture.recording import Recording
from session_capture.session import Session
from session_capture.types import RecordingStatus, SessionStatus


def touch(path: Path, content: bytes = b"data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


@pytest.fixture
def legacy_root(config, tmp_path):
    root = tmp_path / "legacy"
    root.mkdir()
    config.storage.legacy_roots = [str(root)]
    return root


def make_session(store, config, session_id, cameras=(), sensors=()):
    now = datetime.now(timezone.utc)
    session = Session(
        id=session_id,
        name=f"Session {session_id}",
        status=SessionStatus.COMPLETED,
        start_time=now - timedelta(minutes=5),
        end_time=now,
        selected_cameras=list(cameras),
        selected_sensors=list(sensors),
        storage_path=Path(config.storage.sessions_dir) / str(session_id),
    )
    session.storage_path.mkdir(parents=True, exist_ok=True)
    store.create_session(session)
    return session


class TestTokens:

    def test_session_token_does_not_match_longer_id(self):
        assert _contains_token("camera1_session1.mp4", ["session1"])
        assert not _contains_token("camera1_session12.mp4", ["session1"])
        assert _contains_token("Camera-1-Session-3.MP4", ["session-3"])

    def test_camera_forms(self):
        tokens = camera_tokens("7")
        assert matches_camera("rec_7_20260101.mp4", tokens)
        assert matches_camera("7-clip.mp4", tokens)
        assert matches_camera("yard_c7_clip.mp4", tokens)
        assert not matches_camera("rec7_clip.mp4", tokens)
        assert not matches_camera("rec_77_clip.mp4", tokens)
        assert not matches_camera("session_7_cam2.mp4", tokens)


class TestArtifactLocator:

    def test_current_layout(self, config, store):
        session = make_session(store, config, 1, cameras=["1"], sensors=["TEMP-1"])
        video = touch(session.storage_path / "recordings" / "Kitchen_session1-20260101-100000.mp4")
        store.add_recording(Recording(
            camera_id="1", output_path=video, session_id=1, status=RecordingStatus.COMPLETED,
        ))
        touch(session.storage_path / "sensor_data" / "TEMP-1.json", b"{}")
        touch(session.storage_path / "mqtt_data" / "session_1_mqtt_traffic.csv", b"a")
        touch(session.storage_path / "AllData.json", b"{}")

        result = ArtifactLocator(config, store).locate_artifacts(1)

        recordings = result.of_kind(KIND_RECORDING)
        assert len(recordings) == 1
        assert recordings[0].path == video
        assert recordings[0].strategy == "exact"
        assert recordings[0].camera_id == "1"
        assert [a.sensor_id for a in result.of_kind(KIND_SENSOR)] == ["TEMP-1"]
        assert len(result.of_kind(KIND_TRAFFIC)) == 1
        assert [a.name for a in result.of_kind(KIND_METADATA)] == ["AllData.json"]
        assert result.missing == []

    def test_stored_path_moved_found_by_basename(self, config, store):
        make_session(store, config, 2, cameras=["1"])
        moved = touch(Path(config.storage.recordings_dir) / "Kitchen_session2-20260101-100000.mp4")
        store.add_recording(Recording(
            camera_id="1", output_path=Path("/gone/Kitchen_session2-20260101-100000.mp4"),
            session_id=2,
        ))

        result = ArtifactLocator(config, store).locate_artifacts(2)

        assert result.paths == [moved]
        assert result.artifacts[0].strategy == "exact"

    def test_legacy_root_camera_token(self, config, store, legacy_root):
        make_session(store, config, 3, cameras=["1"])
        legacy = touch(legacy_root / "Session3" / "camera_1_session3_clip.mp4")

        result = ArtifactLocator(config, store).locate_artifacts(3)

        recordings = result.of_kind(KIND_RECORDING)
        assert [a.path for a in recordings] == [legacy]
        assert recordings[0].strategy == "pattern"
        assert recordings[0].camera_id == "1"

    def test_bare_camera_id_between_separators(self, config, store):
        config.cameras.append(CameraConfig(id="7", name="Garden", stream_url="rtsp://10.0.0.17/s"))
        make_session(store, config, 9, cameras=["7"])
        video = touch(Path(config.storage.recordings_dir) / "rec_7_20260101-100000.mp4")

        result = ArtifactLocator(config, store).locate_artifacts(9)

        assert result.paths == [video]
        assert result.artifacts[0].strategy == "pattern"
        assert result.missing == []

    def test_short_camera_prefix_form(self, config, store):
        make_session(store, config, 10, cameras=["2"])
        video = touch(Path(config.storage.recordings_dir) / "c2-20260101-100000.mp4")

        result = ArtifactLocator(config, store).locate_artifacts(10)

        assert result.paths == [video]

    def test_session_number_is_not_a_camera_id(self, config, store):
        make_session(store, config, 1, cameras=["1"])
        other = touch(Path(config.storage.recordings_dir) / "recording_session_1_cam2.mp4")

        result = ArtifactLocator(config, store).locate_artifacts(1)

        # Swept as a session file, but never attributed to camera 1
        assert [(a.path, a.camera_id) for a in result.of_kind(KIND_RECORDING)] == [(other, None)]
        assert [m.camera_id for m in result.missing] == ["1"]

    def test_recursive_search_in_legacy_tree(self, config, store, legacy_root):
        make_session(store, config, 4, cameras=["2"])
        nested = touch(legacy_root / "archive" / "2026" / "cam2_session4.mp4")

        result = ArtifactLocator(config, store).locate_artifacts(4)

        assert result.paths == [nested]
        assert result.artifacts[0].strategy == "recursive"

    def test_missing_camera_reported_not_raised(self, config, store):
        make_session(store, config, 5, cameras=["2"])

        result = ArtifactLocator(config, store).locate_artifacts(5)

        assert result.artifacts == []
        assert len(result.missing) == 1
        assert result.missing[0].camera_id == "2"
        assert result.missing[0].kind == KIND_RECORDING

    def test_old_file_outside_window_not_claimed(self, config, store):
        import os

        make_session(store, config, 6, cameras=["1"])
        old = touch(Path(config.storage.recordings_dir) / "camera1-20200101-000000.mp4")
        stamp = (datetime.now(timezone.utc) - timedelta(days=30)).timestamp()
        os.utime(old, (stamp, stamp))

        result = ArtifactLocator(config, store).locate_artifacts(6)

        assert old not in result.paths

    def test_results_deduplicated(self, config, store):
        session = make_session(store, config, 7, cameras=["1"])
        video = touch(session.storage_path / "recordings" / "camera1_session7.mp4")
        store.register_recording_file(session, video, "1")

        paths = ArtifactLocator(config, store).locate(7)

        assert paths.count(video) == 1

    def test_data_dir_session_files(self, config, store):
        make_session(store, config, 8)
        stray = touch(Path(config.storage.data_dir) / "session_8_TEMP-1.csv", b"x")

        result = ArtifactLocator(config, store).locate_artifacts(8)

        assert stray in result.paths

    def test_unknown_session(self, config, store):
        with pytest.raises(NotFoundError):
            ArtifactLocator(config, store).locate(404)
