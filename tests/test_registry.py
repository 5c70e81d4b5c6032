"""Tests for session lifecycle: single active session, stop cascade, recovery."""
import json
import threading

import pytest

from conftest import crashing_encoder_command, fake_encoder_command, wait_for

from session_capture.errors import ConflictError, NotFoundError, StorageError
from session_capture.registry import SessionRegistry
from session_capture.session import Session
from session_capture.store import SESSION_FILES_FILE, SESSION_METADATA_FILE, SessionStore
from session_capture.supervisor import RecordingSupervisor
from session_capture.types import RecordingStatus, SessionStatus


class GatedCommands:
    """Command factory that holds one camera's spawn until released."""

    def __init__(self, gated_camera):
        self.gated_camera = gated_camera
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, camera, stream_url, output_path):
        if camera.id == self.gated_camera:
            self.entered.set()
            self.release.wait(10)
        return fake_encoder_command(camera, stream_url, output_path)


def crash_camera_two(camera, stream_url, output_path):
    if camera.id == "2":
        return crashing_encoder_command(camera, stream_url, output_path)
    return fake_encoder_command(camera, stream_url, output_path)


@pytest.fixture
def registry(config, store, router, supervisor):
    return SessionRegistry(config, store, router, supervisor)


class TestStartSession:

    def test_start_provisions_layout(self, registry, config):
        result = registry.start_session(selected_sensors=["TEMP-1"], name="Kitchen morning")
        session = result.session

        assert session.status == SessionStatus.ACTIVE
        assert session.id == 1
        assert str(session.storage_path) == f"{config.storage.sessions_dir}/1"
        assert session.storage_path.is_dir()
        assert (session.storage_path / "recordings").is_dir()
        assert (session.storage_path / "sensor_data" / "TEMP-1.json").exists()
        assert registry.get_active_session() is session
        assert not result.degraded

    def test_second_start_conflicts_and_keeps_first(self, registry):
        first = registry.start_session(selected_sensors=["TEMP-1"]).session

        with pytest.raises(ConflictError):
            registry.start_session(selected_sensors=["HUM-1"])

        assert registry.get_active_session().id == first.id
        assert registry.router.active_session_ids() == [first.id]

    def test_unknown_camera_degrades_session(self, registry):
        result = registry.start_session(selected_cameras=["1", "99"])

        assert result.degraded
        assert "99" in result.failed_cameras
        assert [r.camera_id for r in result.recordings] == ["1"]
        assert result.session.is_active

    def test_storage_failure_releases_slot(self, config, store, router, supervisor, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config.storage.sessions_dir = str(blocker / "sessions")
        registry = SessionRegistry(config, store, router, supervisor)

        with pytest.raises(StorageError):
            registry.start_session()

        assert registry.get_active_session() is None
        assert store.get_session(1).status == SessionStatus.ERROR

    def test_ids_are_monotonic(self, registry):
        first = registry.start_session().session
        registry.stop_session(first.id)
        second = registry.start_session().session

        assert second.id == first.id + 1


class TestStopSession:
    """Stop cascade and idempotence."""

    def test_stop_finalizes_sensor_data(self, registry, router):
        session = registry.start_session(selected_sensors=["TEMP-1"]).session
        router.on_message("zigbee2mqtt/TEMP-1", b'{"temperature": 21.5}')
        router.on_message("zigbee2mqtt/MOTION-1", b'{"occupancy": true}')

        stopped = registry.stop_session(session.id)

        assert stopped.status == SessionStatus.COMPLETED
        assert stopped.end_time is not None
        with open(session.storage_path / "AllData.json") as f:
            all_data = json.load(f)
        assert all_data["statistics"]["totalMessages"] == 1
        assert all_data["sensors"]["TEMP-1"]["data"][0]["temperature"] == 21.5
        assert (session.storage_path / SESSION_METADATA_FILE).exists()
        assert router.active_session_ids() == []
        assert registry.get_active_session() is None

    def test_stop_is_idempotent(self, registry):
        session = registry.start_session().session

        first = registry.stop_session(session.id)
        end_time = first.end_time
        second = registry.stop_session(session.id)

        assert second.status == SessionStatus.COMPLETED
        assert second.end_time == end_time

    def test_stop_unknown_session(self, registry):
        with pytest.raises(NotFoundError):
            registry.stop_session(42)

    def test_stop_ends_recordings_and_registers_files(self, registry, store):
        result = registry.start_session(selected_cameras=["1"])
        session = result.session

        registry.stop_session(session.id)

        recordings = store.list_recordings(session.id)
        assert len(recordings) == 1
        assert recordings[0].status == RecordingStatus.COMPLETED
        assert recordings[0].output_path.parent == session.storage_path / "recordings"

        with open(session.storage_path / SESSION_FILES_FILE) as f:
            manifest = json.load(f)
        assert manifest["recordings"][0]["camera"] == "1"
        assert manifest["recordings"][0]["path"] == str(recordings[0].output_path)

    def test_stop_during_start_stops_every_camera(self, config, store, router):
        commands = GatedCommands("2")
        supervisor = RecordingSupervisor(
            config.recorder, config.storage.recordings_dir, command_factory=commands
        )
        registry = SessionRegistry(config, store, router, supervisor)
        stopped = []

        starter = threading.Thread(
            target=registry.start_session, kwargs={"selected_cameras": ["1", "2"]}
        )
        stopper = threading.Thread(target=lambda: stopped.append(registry.stop_session(1)))
        starter.start()
        try:
            assert commands.entered.wait(10)
            assert supervisor.is_recording("1")

            stopper.start()
            stopper.join(0.3)
            # Still waiting for camera 2 to finish starting
            assert stopper.is_alive()

            commands.release.set()
            starter.join(10)
            stopper.join(30)
        finally:
            commands.release.set()
            supervisor.stop_all()

        assert stopped[0].status == SessionStatus.COMPLETED
        assert supervisor.active_recordings() == []
        assert not supervisor.is_recording("2")
        statuses = {r.camera_id: r.status for r in store.list_recordings(1)}
        assert statuses == {"1": RecordingStatus.COMPLETED, "2": RecordingStatus.COMPLETED}

    def test_crash_leaves_sibling_recording(self, config, store, router):
        supervisor = RecordingSupervisor(
            config.recorder, config.storage.recordings_dir, command_factory=crash_camera_two
        )
        registry = SessionRegistry(config, store, router, supervisor)

        result = registry.start_session(selected_cameras=["1", "2"])
        by_camera = {r.camera_id: r for r in result.recordings}
        try:
            assert wait_for(lambda: by_camera["2"].status == RecordingStatus.ERROR)
            assert by_camera["2"].exit_code == 1
            assert wait_for(lambda: by_camera["1"].status == RecordingStatus.RECORDING)
            assert supervisor.is_recording("1")
            assert registry.get_active_session().id == result.session.id

            stopped = registry.stop_session(result.session.id)
        finally:
            supervisor.stop_all()

        assert stopped.status == SessionStatus.COMPLETED
        assert store.get_recording(by_camera["1"].recording_id).status == RecordingStatus.COMPLETED
        assert store.get_recording(by_camera["2"].recording_id).status == RecordingStatus.ERROR


class TestStandaloneRecording:

    def test_start_and_stop(self, registry, store):
        recording = registry.start_recording("2")
        assert recording.session_id is None

        final = registry.stop_recording("2")
        assert final.status == RecordingStatus.COMPLETED
        assert store.get_recording(recording.recording_id).status == RecordingStatus.COMPLETED

    def test_unknown_camera(self, registry):
        with pytest.raises(NotFoundError):
            registry.start_recording("99")

    def test_stop_when_idle(self, registry):
        assert registry.stop_recording("1") is None


class TestRecovery:

    def test_stale_active_session_closed(self, config, router, supervisor):
        store = SessionStore(config.storage.data_dir)
        stale = Session(id=5, name="Interrupted")
        stale.storage_path = config.storage.all_dirs()[0] / "5"
        stale.storage_path.mkdir(parents=True)
        store.create_session(stale)

        reloaded = SessionStore(config.storage.data_dir)
        assert reloaded.load() == 1
        registry = SessionRegistry(config, reloaded, router, supervisor)

        assert registry.recover() == 1
        session = reloaded.get_session(5)
        assert session.status == SessionStatus.COMPLETED
        assert session.error == "closed on restart"
        assert registry.start_session().session.id == 6
