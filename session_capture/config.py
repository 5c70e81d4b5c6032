"""
Session Capture Orchestrator – Configuration

This module handles capture.yaml parsing, validation and environment overrides.

CRITICAL RULES:
- capture.yaml + environment are the SINGLE SOURCE OF TRUTH at startup
- Configuration is read ONCE (no hot-reload)
- Invalid scalar values → default + warning
- Structurally invalid file (not a mapping, bad YAML) → ConfigError

ENVIRONMENT OVERRIDES (applied after the file):
- CAPTURE_CONFIG: path to capture.yaml
- MQTT_BROKER_URLS: comma-separated broker endpoints
- MQTT_TOPIC_ROOT: discovery topic root (default: zigbee2mqtt)
- MQTT_ENABLED: "false" runs video-only
- SESSIONS_DIR / RECORDINGS_DIR / DATA_DIR / UPLOADS_DIR: storage roots
- FFMPEG_PATH: encoder binary
- LOG_LEVEL: loguru level
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlsplit

import yaml
from loguru import logger

from .errors import ConfigError


DEFAULT_BROKER_URLS = ["mqtt://localhost:1883"]

# Numeric settings that may be zero; every other number must be positive
ZERO_ALLOWED = {"base_delay_seconds", "max_backups", "time_window_slack_seconds"}


@dataclass
class CameraConfig:
    """
    One IP camera as known to the orchestrator.

    Cameras are owned by the metadata collaborator; the orchestrator only
    needs enough to build a stream URL and a file prefix.
    """

    id: str
    name: str
    stream_url: Optional[str] = None
    ip_address: Optional[str] = None
    port: int = 554
    path: str = "/stream1"
    username: Optional[str] = None
    password: Optional[str] = None
    prefix: Optional[str] = None

    @property
    def file_prefix(self) -> str:
        """Filename prefix: explicit prefix, else a slug of the camera name."""
        raw = self.prefix or self.name or f"camera{self.id}"
        slug = "".join(c if c.isalnum() or c in "-_" else "_" for c in raw.strip())
        return slug.strip("_") or f"camera{self.id}"

    def resolve_stream_url(self) -> str:
        """
        Resolve the RTSP/HTTP URL to hand to the encoder.

        Raises:
            ValueError: If neither stream_url nor ip_address is configured
        """
        if self.stream_url:
            return self.stream_url

        if not self.ip_address:
            raise ValueError(f"Camera {self.id} has no stream_url or ip_address")

        credentials = ""
        if self.username:
            credentials = quote(self.username, safe="")
            if self.password:
                credentials += ":" + quote(self.password, safe="")
            credentials += "@"

        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"rtsp://{credentials}{self.ip_address}:{self.port}{path}"

    def masked_stream_url(self) -> str:
        """Stream URL with the password hidden, for logs."""
        try:
            url = self.resolve_stream_url()
        except ValueError:
            return "<unresolved>"
        parts = urlsplit(url)
        if parts.password:
            return url.replace(f":{parts.password}@", ":***@")
        return url


@dataclass
class BrokerSettings:
    enabled: bool = True
    urls: List[str] = field(default_factory=lambda: list(DEFAULT_BROKER_URLS))
    topic_root: str = "zigbee2mqtt"
    extra_topics: List[str] = field(default_factory=list)
    client_id_prefix: str = "session-capture"
    keepalive: int = 60
    connect_timeout_seconds: float = 10.0
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def device_list_topic(self) -> str:
        return f"{self.topic_root}/bridge/devices"

    @property
    def device_request_topic(self) -> str:
        return f"{self.topic_root}/bridge/request/devices"

    @property
    def static_topics(self) -> List[str]:
        """Topics subscribed on every (re)connect."""
        root = self.topic_root
        topics = [
            f"{root}/#",
            f"{root}/+/get",
            f"{root}/bridge/devices",
            f"{root}/bridge/state",
        ]
        for topic in self.extra_topics:
            if topic not in topics:
                topics.append(topic)
        return topics


@dataclass
class StorageSettings:
    sessions_dir: str = "./sessions"
    recordings_dir: str = "./recordings"
    data_dir: str = "./data"
    uploads_dir: str = "./uploads"
    temp_dir: str = "./temp"
    # Older deployments wrote session folders under other roots
    legacy_roots: List[str] = field(default_factory=list)

    def all_dirs(self) -> List[Path]:
        return [
            Path(self.sessions_dir),
            Path(self.recordings_dir),
            Path(self.data_dir),
            Path(self.uploads_dir),
            Path(self.temp_dir),
        ]


@dataclass
class SinkSettings:
    flush_every_messages: int = 3
    flush_interval_seconds: float = 30.0
    max_json_messages: int = 1000
    log_every_messages: int = 100
    message_cache_size: int = 100
    backup_interval_seconds: float = 1800.0
    max_backups: int = 10


@dataclass
class RecorderSettings:
    ffmpeg_path: str = "ffmpeg"
    keyframe_interval_seconds: int = 2
    video_codec: str = "libx264"
    video_profile: str = "main"
    preset: str = "veryfast"
    extra_args: List[str] = field(default_factory=list)
    stop_grace_seconds: float = 10.0
    kill_timeout_seconds: float = 5.0
    metrics_interval_seconds: float = 5.0
    output_extension: str = ".mp4"


@dataclass
class ExportSettings:
    search_depth: int = 3
    time_window_slack_seconds: float = 300.0
    chunk_size: int = 64 * 1024
    namespace_by_session: bool = False
    recording_extensions: List[str] = field(
        default_factory=lambda: [".mp4", ".mkv", ".avi", ".mov", ".ts"]
    )


@dataclass
class CaptureConfig:
    """
    Parsed and validated orchestrator configuration.

    IMMUTABLE after parsing (treat as read-only).
    """

    broker: BrokerSettings = field(default_factory=BrokerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    sink: SinkSettings = field(default_factory=SinkSettings)
    recorder: RecorderSettings = field(default_factory=RecorderSettings)
    export: ExportSettings = field(default_factory=ExportSettings)
    cameras: List[CameraConfig] = field(default_factory=list)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def get_camera(self, camera_id: str) -> Optional[CameraConfig]:
        for camera in self.cameras:
            if camera.id == str(camera_id):
                return camera
        return None

    @classmethod
    def from_yaml_file(cls, yaml_path: str) -> "CaptureConfig":
        """
        Parse and validate capture.yaml.

        Args:
            yaml_path: Path to capture.yaml

        Returns:
            CaptureConfig (environment overrides NOT applied)

        Raises:
            ConfigError: Missing file, invalid YAML, or non-mapping document
        """
        try:
            with open(yaml_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigError(f"capture.yaml not found: {yaml_path}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {yaml_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"capture.yaml is not a mapping: {yaml_path}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaptureConfig":
        config = cls()

        _apply_section(config.broker, data.get("broker"), "broker")
        _apply_section(config.storage, data.get("storage"), "storage")
        _apply_section(config.sink, data.get("sink"), "sink")
        _apply_section(config.recorder, data.get("recorder"), "recorder")
        _apply_section(config.export, data.get("export"), "export")

        cameras = data.get("cameras", [])
        if not isinstance(cameras, list):
            raise ConfigError("cameras must be a list")

        for entry in cameras:
            if not isinstance(entry, dict) or "id" not in entry:
                logger.warning(f"Skipping camera entry without id: {entry!r}")
                continue
            known = {k: v for k, v in entry.items() if k in CameraConfig.__dataclass_fields__}
            known["id"] = str(known["id"])
            known.setdefault("name", f"Camera {known['id']}")
            config.cameras.append(CameraConfig(**known))

        logging_section = data.get("logging", {}) or {}
        if isinstance(logging_section, dict):
            config.log_level = str(logging_section.get("level", config.log_level)).upper()
            config.log_file = logging_section.get("file", config.log_file)

        return config

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "CaptureConfig":
        """Apply environment overrides in place and return self."""
        env = os.environ if environ is None else environ

        urls = env.get("MQTT_BROKER_URLS")
        if urls:
            self.broker.urls = [u.strip() for u in urls.split(",") if u.strip()]

        if env.get("MQTT_TOPIC_ROOT"):
            self.broker.topic_root = env["MQTT_TOPIC_ROOT"].strip("/")

        if "MQTT_ENABLED" in env:
            self.broker.enabled = env["MQTT_ENABLED"].strip().lower() not in ("0", "false", "no")

        for env_name, attr in (
            ("SESSIONS_DIR", "sessions_dir"),
            ("RECORDINGS_DIR", "recordings_dir"),
            ("DATA_DIR", "data_dir"),
            ("UPLOADS_DIR", "uploads_dir"),
        ):
            if env.get(env_name):
                setattr(self.storage, attr, env[env_name])

        if env.get("FFMPEG_PATH"):
            self.recorder.ffmpeg_path = env["FFMPEG_PATH"]

        if env.get("LOG_LEVEL"):
            self.log_level = env["LOG_LEVEL"].upper()

        return self


def _apply_section(target: Any, values: Optional[Dict[str, Any]], section: str) -> None:
    """
    Copy known keys from a YAML mapping onto a settings dataclass.

    Type mismatches and non-positive counts, intervals, depths and
    timeouts keep the default and emit a warning.
    """
    if values is None:
        return
    if not isinstance(values, dict):
        raise ConfigError(f"{section} must be a mapping")

    for key, value in values.items():
        if key not in target.__dataclass_fields__:
            logger.warning(f"Unknown config key {section}.{key}, ignoring")
            continue

        default = getattr(target, key)
        if default is not None and value is not None and not _compatible(default, value):
            logger.warning(
                f"Invalid value for {section}.{key}: {value!r} "
                f"(expected {type(default).__name__}), using default {default!r}"
            )
            continue

        if _is_number(default) and _is_number(value):
            minimum_ok = value >= 0 if key in ZERO_ALLOWED else value > 0
            if not minimum_ok:
                logger.warning(
                    f"Out-of-range value for {section}.{key}: {value!r}, "
                    f"using default {default!r}"
                )
                continue

        if isinstance(default, float) and isinstance(value, int):
            value = float(value)
        setattr(target, key, value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _compatible(default: Any, value: Any) -> bool:
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, float):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(default, int):
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, type(default))


def load_config(yaml_path: Optional[str] = None) -> CaptureConfig:
    """
    Load configuration from file (if any) and environment.

    Resolution order: explicit path → CAPTURE_CONFIG → built-in defaults.
    """
    path = yaml_path or os.getenv("CAPTURE_CONFIG")
    if path:
        config = CaptureConfig.from_yaml_file(path)
        logger.info(f"Loaded capture configuration from {path}")
    else:
        config = CaptureConfig()
        logger.info("No capture.yaml given, using defaults")

    return config.apply_env()


# EXAMPLE capture.yaml:
#
# broker:
#   urls: ["mqtt://192.168.0.20:1883", "ws://mqtt:9001"]
#   topic_root: zigbee2mqtt
#   extra_topics: ["livinglab/#", "sensors/#"]
#
# storage:
#   sessions_dir: /srv/capture/sessions
#   recordings_dir: /srv/capture/recordings
#   data_dir: /srv/capture/data
#   legacy_roots: [/srv/old-capture/sessions]
#
# recorder:
#   ffmpeg_path: /usr/bin/ffmpeg
#   stop_grace_seconds: 10
#
# cameras:
#   - id: "1"
#     name: Kitchen
#     ip_address: 192.168.0.31
#     username: admin
#     password: secret
#     prefix: kitchen
#
# logging:
#   level: INFO
#   file: /var/log/session-capture.log
