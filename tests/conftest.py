"""
Pytest configuration and fixtures.
"""
import sys
import time

import pytest

from session_capture.config import CameraConfig, CaptureConfig
from session_capture.devices import DeviceRegistry
from session_capture.message_cache import MessageCache
from session_capture.router import TopicRouter
from session_capture.store import SessionStore
from session_capture.supervisor import RecordingSupervisor


# Stand-in encoder: one progress block, writes the output file, exits on "q"
FAKE_ENCODER = (
    "import sys\n"
    "open(sys.argv[1], 'wb').write(b'fake video')\n"
    "print('frame=10')\n"
    "print('fps=25.0')\n"
    "print('total_size=2048')\n"
    "print('bitrate=512.0kbits/s')\n"
    "print('progress=continue')\n"
    "sys.stdout.flush()\n"
    "for line in sys.stdin:\n"
    "    if line.strip() == 'q':\n"
    "        break\n"
)

CRASHING_ENCODER = (
    "import sys\n"
    "sys.stderr.write('Connection refused\\n')\n"
    "sys.exit(1)\n"
)


# Ignores "q" and SIGTERM; only kill() ends it
STUBBORN_ENCODER = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('frame=0')\n"
    "sys.stdout.flush()\n"
    "while True:\n"
    "    time.sleep(0.1)\n"
)

# Ten progress blocks 0.1s apart, then waits for "q"
STREAMING_ENCODER = (
    "import sys, time\n"
    "for n in range(1, 11):\n"
    "    print(f'frame={n * 10}')\n"
    "    print('fps=25.0')\n"
    "    print('progress=continue')\n"
    "    sys.stdout.flush()\n"
    "    time.sleep(0.1)\n"
    "for line in sys.stdin:\n"
    "    if line.strip() == 'q':\n"
    "        break\n"
)


def fake_encoder_command(camera, stream_url, output_path):
    return [sys.executable, "-c", FAKE_ENCODER, str(output_path)]


def crashing_encoder_command(camera, stream_url, output_path):
    return [sys.executable, "-c", CRASHING_ENCODER]


def stubborn_encoder_command(camera, stream_url, output_path):
    return [sys.executable, "-c", STUBBORN_ENCODER]


def streaming_encoder_command(camera, stream_url, output_path):
    return [sys.executable, "-c", STREAMING_ENCODER]


def wait_for(predicate, timeout=10.0, interval=0.05):
    """Poll predicate until it is true or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def config(tmp_path) -> CaptureConfig:
    """Configuration with every storage root under tmp_path, broker disabled."""
    cfg = CaptureConfig()
    cfg.broker.enabled = False
    cfg.storage.sessions_dir = str(tmp_path / "sessions")
    cfg.storage.recordings_dir = str(tmp_path / "recordings")
    cfg.storage.data_dir = str(tmp_path / "data")
    cfg.storage.uploads_dir = str(tmp_path / "uploads")
    cfg.storage.temp_dir = str(tmp_path / "temp")
    cfg.recorder.stop_grace_seconds = 5.0
    cfg.recorder.kill_timeout_seconds = 5.0
    cfg.cameras = [
        CameraConfig(id="1", name="Kitchen", stream_url="rtsp://10.0.0.11/stream1"),
        CameraConfig(id="2", name="Hallway", stream_url="rtsp://10.0.0.12/stream1"),
    ]
    for directory in cfg.storage.all_dirs():
        directory.mkdir(parents=True, exist_ok=True)
    return cfg


@pytest.fixture
def store(config) -> SessionStore:
    return SessionStore(config.storage.data_dir)


@pytest.fixture
def router() -> TopicRouter:
    return TopicRouter(MessageCache(10), DeviceRegistry())


@pytest.fixture
def supervisor(config) -> RecordingSupervisor:
    sup = RecordingSupervisor(
        config.recorder,
        config.storage.recordings_dir,
        command_factory=fake_encoder_command,
    )
    yield sup
    sup.stop_all()
