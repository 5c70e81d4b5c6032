"""Tests for session archive builds."""
import json
import threading
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from session_capture.archiver import Archiver, ExportProgressTracker, iter_archive
from session_capture.errors import ExportCancelled
from session_capture.locator import (
    KIND_METADATA,
    KIND_RECORDING,
    KIND_SENSOR,
    Artifact,
    LocateResult,
    MissingArtifact,
)
from session_capture.session import Session
from session_capture.types import ExportStatus, SessionStatus


@pytest.fixture
def session(tmp_path):
    now = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    return Session(
        id=3,
        name="Kitchen morning",
        status=SessionStatus.COMPLETED,
        start_time=now,
        end_time=now + timedelta(hours=1, minutes=2, seconds=3),
        selected_sensors=["TEMP-1"],
        selected_cameras=["1"],
        storage_path=tmp_path / "sessions" / "3",
        metadata={"researcher": "R. Alvarez", "participants": ["P01"], "notes": "pilot run"},
    )


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestArchiver:

    def test_zero_artifacts_still_produce_manifest(self, config, session, tmp_path):
        archiver = Archiver(config)
        located = LocateResult(missing=[
            MissingArtifact(name="camera 1 recording", kind=KIND_RECORDING,
                            camera_id="1", reason="no match"),
        ])

        path = archiver.build_archive(session, located, destination=tmp_path / "out.zip")

        with zipfile.ZipFile(path) as zf:
            assert sorted(zf.namelist()) == ["AllData.json", "README.txt"]
            readme = zf.read("README.txt").decode()
            all_data = json.loads(zf.read("AllData.json"))

        assert "Session ID: 3" in readme
        assert "Researcher: R. Alvarez" in readme
        assert "Duration: 1h 2m 3s" in readme
        assert "pilot run" in readme
        assert "(no artifacts found)" in readme
        assert "camera 1 recording: no match" in readme
        assert all_data["sessionId"] == 3
        assert all_data["sensors"] == {}

    def test_layout_and_compression(self, config, session, tmp_path):
        video = write(tmp_path / "src" / "Kitchen_session3.mp4", "video-bytes")
        sensor = write(tmp_path / "src" / "TEMP-1.json", json.dumps({"data": [{"temperature": 21.5}]}))
        meta = write(tmp_path / "src" / "session_metadata.json", "{}")
        located = LocateResult(artifacts=[
            Artifact(path=video, kind=KIND_RECORDING, camera_id="1", strategy="exact"),
            Artifact(path=sensor, kind=KIND_SENSOR, sensor_id="TEMP-1"),
            Artifact(path=meta, kind=KIND_METADATA),
        ])

        path = Archiver(config).build_archive(session, located, destination=tmp_path / "out.zip")

        with zipfile.ZipFile(path) as zf:
            names = set(zf.namelist())
            assert names == {
                "recordings/Kitchen_session3.mp4",
                "sensors/TEMP-1.json",
                "session_metadata.json",
                "AllData.json",
                "README.txt",
            }
            assert zf.getinfo("recordings/Kitchen_session3.mp4").compress_type == zipfile.ZIP_STORED
            assert zf.getinfo("sensors/TEMP-1.json").compress_type == zipfile.ZIP_DEFLATED
            all_data = json.loads(zf.read("AllData.json"))

        assert all_data["sensors"]["TEMP-1"]["data"][0]["temperature"] == 21.5

    def test_existing_all_data_reused(self, config, session, tmp_path):
        all_data = write(tmp_path / "src" / "AllData.json", json.dumps({"sessionId": 3, "marker": True}))
        located = LocateResult(artifacts=[Artifact(path=all_data, kind=KIND_METADATA)])

        path = Archiver(config).build_archive(session, located, destination=tmp_path / "out.zip")

        with zipfile.ZipFile(path) as zf:
            assert zf.namelist().count("AllData.json") == 1
            assert json.loads(zf.read("AllData.json"))["marker"] is True

    def test_unreadable_artifact_is_omitted(self, config, session, tmp_path):
        located = LocateResult(artifacts=[
            Artifact(path=tmp_path / "vanished.mp4", kind=KIND_RECORDING, camera_id="1"),
        ])

        path = Archiver(config).build_archive(session, located, destination=tmp_path / "out.zip")

        with zipfile.ZipFile(path) as zf:
            assert "recordings/vanished.mp4" not in zf.namelist()
            assert "vanished.mp4: unreadable" in zf.read("README.txt").decode()

    def test_duplicate_names_get_suffix(self, config, session, tmp_path):
        a = write(tmp_path / "a" / "TEMP-1.csv", "x")
        b = write(tmp_path / "b" / "TEMP-1.csv", "y")
        located = LocateResult(artifacts=[
            Artifact(path=a, kind=KIND_SENSOR), Artifact(path=b, kind=KIND_SENSOR),
        ])

        path = Archiver(config).build_archive(session, located, destination=tmp_path / "out.zip")

        with zipfile.ZipFile(path) as zf:
            assert {"sensors/TEMP-1.csv", "sensors/TEMP-1_2.csv"} <= set(zf.namelist())

    def test_namespaced_entries(self, config, session, tmp_path):
        path = Archiver(config).build_archive(
            session, LocateResult(), destination=tmp_path / "out.zip", namespace=True,
        )
        with zipfile.ZipFile(path) as zf:
            assert sorted(zf.namelist()) == ["session_3/AllData.json", "session_3/README.txt"]

    def test_cancel_deletes_partial_archive(self, config, session, tmp_path):
        progress = ExportProgressTracker()
        cancel = threading.Event()
        cancel.set()
        destination = tmp_path / "out.zip"

        with pytest.raises(ExportCancelled):
            Archiver(config, progress).build_archive(
                session, LocateResult(), destination=destination, cancel_event=cancel,
            )

        assert not destination.exists()
        assert progress.get(3).status == ExportStatus.ERROR

    def test_progress_completed(self, config, session, tmp_path):
        progress = ExportProgressTracker()
        Archiver(config, progress).build_archive(session, LocateResult(), destination=tmp_path / "o.zip")

        state = progress.get(3)
        assert state.status == ExportStatus.COMPLETED
        assert state.percent == 100.0

    def test_default_destination_in_temp_dir(self, config, session):
        path = Archiver(config).build_archive(session, LocateResult())
        assert path.parent == Path(config.storage.temp_dir)
        assert path.exists()


class TestIterArchive:

    def test_streams_and_deletes(self, tmp_path):
        path = tmp_path / "a.zip"
        path.write_bytes(b"0123456789")

        chunks = list(iter_archive(path, chunk_size=4))

        assert chunks == [b"0123", b"4567", b"89"]
        assert not path.exists()
