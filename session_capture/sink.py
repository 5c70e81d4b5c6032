"""
Session Sink

Per-session writer that persists routed bus messages to the session's
storage layout.

LAYOUT (under the session directory):
- mqtt_data/session_<id>_mqtt_traffic.json: bounded consolidated log (atomic rewrite)
- mqtt_data/session_<id>_mqtt_traffic.csv: every message, append-only
- mqtt_data/session_<id>_mqtt.log: one line every N messages
- sensor_data/{temperature,humidity,motion}_sensors.csv: typed series
- sensor_data/<sensor>.json + <sensor>.csv: per-sensor series
- AllData.json: written once by finalize()

CRITICAL CONSTRAINTS:
- Exclusively owned by one session
- Each sub-write is independent: a WriteError is logged and the
  remaining sub-writes still run
- CSV files are append-only; only JSON documents are rewritten
"""

import csv
import io
import json
import re
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from loguru import logger

from .config import SinkSettings
from .errors import WriteError
from .fileio import append_line, iso_now, read_json, write_json_atomic


CONSOLIDATED_CSV_HEADER = ["timestamp", "topic", "payload", "sensor_id", "battery", "linkquality"]
SENSOR_CSV_HEADER = ["timestamp", "topic", "value", "battery", "linkquality"]

# typed csv file -> value column
TYPED_CSV_FILES = {
    "temperature": "temperature_sensors.csv",
    "humidity": "humidity_sensors.csv",
    "motion": "motion_sensors.csv",
}

# Copied verbatim into each per-sensor record when present in the payload
METADATA_KEYS = (
    "battery", "voltage", "linkquality", "last_seen",
    "temperature", "humidity", "pressure", "occupancy",
    "presence", "contact", "state", "motion", "illuminance_lux",
    "illuminance", "power", "energy", "current", "device_temperature",
    "update", "update_available", "water_leak", "tamper", "smoke",
    "rssi", "position", "battery_low", "action", "brightness",
)

# Order in which a per-sensor CSV picks its "value" column
PRIMARY_VALUE_KEYS = ("temperature", "humidity", "occupancy", "presence", "contact", "state")

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


def safe_sensor_filename(sensor_id: str) -> str:
    return _UNSAFE_FILENAME.sub("_", sensor_id) or "unknown"


def extract_fields(payload: Any) -> Dict[str, Any]:
    """
    Pull well-known fields out of a decoded payload.

    Returns:
        Dict with battery, linkquality (""-defaulted), temperature,
        humidity, motion (motion or occupancy), presence, contact
        (None-defaulted)
    """
    fields: Dict[str, Any] = {
        "battery": "",
        "linkquality": "",
        "temperature": None,
        "humidity": None,
        "motion": None,
        "presence": None,
        "contact": None,
    }
    if not isinstance(payload, dict):
        return fields

    for key in ("battery", "linkquality"):
        if payload.get(key) is not None:
            fields[key] = payload[key]
    for key in ("temperature", "humidity", "presence", "contact"):
        if key in payload:
            fields[key] = payload[key]

    if "motion" in payload:
        fields["motion"] = payload["motion"]
    elif "occupancy" in payload:
        fields["motion"] = payload["occupancy"]

    return fields


def _csv_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _csv_row(values: Iterable[Any]) -> str:
    buffer = io.StringIO()
    csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n").writerow(
        [_csv_text(v) for v in values]
    )
    return buffer.getvalue()


class FlushPolicy:
    """
    Hybrid flush trigger: every N messages or every T seconds, whichever first.
    """

    def __init__(
        self,
        every_messages: int = 3,
        interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.every_messages = max(1, every_messages)
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._pending = 0
        self._last_flush = clock()

    def record(self) -> None:
        self._pending += 1

    def due(self) -> bool:
        if self._pending == 0:
            return False
        if self._pending >= self.every_messages:
            return True
        return (self._clock() - self._last_flush) >= self.interval_seconds

    def mark_flushed(self) -> None:
        self._pending = 0
        self._last_flush = self._clock()

    @property
    def pending(self) -> int:
        return self._pending


class SessionSink:
    """
    Writes one session's sensor traffic to disk.

    LIFECYCLE:
    1. open(): create directories and file headers
    2. write() for every routed message
    3. finalize(): flush, write AllData.json, close

    write() after finalize() is ignored with a warning.
    """

    def __init__(
        self,
        session_id: int,
        session_dir: Path,
        selected_sensors: Optional[List[str]] = None,
        settings: Optional[SinkSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.session_dir = Path(session_dir)
        self.selected_sensors = list(selected_sensors or [])
        self.settings = settings or SinkSettings()

        self.sensor_dir = self.session_dir / "sensor_data"
        self.mqtt_dir = self.session_dir / "mqtt_data"
        self.traffic_json_path = self.mqtt_dir / f"session_{session_id}_mqtt_traffic.json"
        self.traffic_csv_path = self.mqtt_dir / f"session_{session_id}_mqtt_traffic.csv"
        self.log_path = self.mqtt_dir / f"session_{session_id}_mqtt.log"
        self.all_data_path = self.session_dir / "AllData.json"

        self.flush_policy = FlushPolicy(
            self.settings.flush_every_messages,
            self.settings.flush_interval_seconds,
            clock=clock,
        )

        self.start_time: Optional[str] = None
        self.end_time: Optional[str] = None
        self.message_count = 0
        self.write_errors = 0
        self.last_flush_time: Optional[str] = None

        self._recent: Deque[Dict[str, Any]] = deque(maxlen=self.settings.max_json_messages)
        self._sensor_docs: Dict[str, Dict[str, Any]] = {}
        self._sensor_counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def sensor_json_path(self, sensor_id: str) -> Path:
        return self.sensor_dir / f"{safe_sensor_filename(sensor_id)}.json"

    def sensor_csv_path(self, sensor_id: str) -> Path:
        return self.sensor_dir / f"{safe_sensor_filename(sensor_id)}.csv"

    def typed_csv_path(self, kind: str) -> Path:
        return self.sensor_dir / TYPED_CSV_FILES[kind]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """
        Create the sink's directories and initial files.

        Raises:
            OSError: If the layout cannot be created (session-level failure)
        """
        self.start_time = iso_now()
        self.sensor_dir.mkdir(parents=True, exist_ok=True)
        self.mqtt_dir.mkdir(parents=True, exist_ok=True)

        write_json_atomic(self.traffic_json_path, self._traffic_document())
        self.traffic_csv_path.write_text(_csv_header(CONSOLIDATED_CSV_HEADER), encoding="utf-8")

        for kind, filename in TYPED_CSV_FILES.items():
            header = ["timestamp", "sensor_id", kind, "battery", "linkquality"]
            (self.sensor_dir / filename).write_text(_csv_header(header), encoding="utf-8")

        sensors = ", ".join(self.selected_sensors) if self.selected_sensors else "all"
        self.log_path.write_text(
            f"[{self.start_time}] Capture started for session {self.session_id}\n"
            f"[{self.start_time}] Selected sensors: {sensors}\n",
            encoding="utf-8",
        )

        for sensor_id in self.selected_sensors:
            doc = self._new_sensor_doc(sensor_id)
            self._sensor_docs[sensor_id] = doc
            write_json_atomic(self.sensor_json_path(sensor_id), doc)
            self.sensor_csv_path(sensor_id).write_text(_csv_header(SENSOR_CSV_HEADER), encoding="utf-8")

        logger.info(
            f"Session sink opened for session {self.session_id} at {self.session_dir} "
            f"(sensors: {sensors})"
        )

    def write(self, sensor_id: str, topic: str, message: Any, timestamp: Optional[str] = None) -> None:
        """
        Persist one routed message.

        Args:
            sensor_id: Identity derived from the topic
            topic: Full topic
            message: Decoded payload (dict/list/str)
            timestamp: ISO-8601 receive time (defaults to now)

        Never raises for I/O failures: each sub-write is guarded.
        """
        timestamp = timestamp or iso_now()

        with self._lock:
            if self._closed:
                logger.warning(f"Write to closed sink of session {self.session_id} ignored (topic {topic})")
                return

            fields = extract_fields(message)
            self.message_count += 1
            self._sensor_counts[sensor_id] = self._sensor_counts.get(sensor_id, 0) + 1
            entry = {"topic": topic, "payload": message, "timestamp": timestamp}
            self._recent.append(entry)

            self._guarded(self.traffic_csv_path, self._append_consolidated_csv,
                          timestamp, topic, message, sensor_id, fields)
            self._guarded(self.sensor_dir, self._append_typed_csvs, timestamp, sensor_id, fields)
            self._guarded(self.sensor_json_path(sensor_id), self._upsert_sensor_json,
                          sensor_id, timestamp, topic, message)
            self._guarded(self.sensor_csv_path(sensor_id), self._append_sensor_csv,
                          sensor_id, timestamp, topic, message, fields)

            if self.message_count % self.settings.log_every_messages == 0:
                self._guarded(self.log_path, append_line, self.log_path,
                              f"[{timestamp}] Topic: {topic}, Sensor: {sensor_id}, "
                              f"Messages: {self.message_count}")

            self.flush_policy.record()
            if self.flush_policy.due():
                self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def flush_if_due(self) -> bool:
        """Time-based half of the flush trigger, for quiet periods."""
        with self._lock:
            if self._closed or not self.flush_policy.due():
                return False
            self._flush_locked()
            return True

    def finalize(
        self,
        topics_discovered: Optional[List[str]] = None,
        session_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Path]:
        """
        Flush, stamp the end time, write AllData.json and close.

        Args:
            topics_discovered: Every topic seen on the bus
            session_data: Session metadata merged into AllData.json

        Returns:
            Path to AllData.json, or None if it could not be written
        """
        with self._lock:
            if self._closed:
                return self.all_data_path if self.all_data_path.exists() else None

            self.end_time = iso_now()
            self._flush_locked()
            self._closed = True

            sensors = self._collect_sensor_docs()
            document: Dict[str, Any] = dict(session_data or {})
            document.update({
                "sessionId": self.session_id,
                "startTime": self.start_time,
                "endTime": self.end_time,
                "status": "completed",
                "selectedSensors": self.selected_sensors,
                "messages": list(self._recent),
                "sensors": sensors,
                "topicsDiscovered": list(topics_discovered or []),
                "statistics": {
                    "totalMessages": self.message_count,
                    "sensorsCount": len(sensors),
                    "messagesPerSensor": dict(self._sensor_counts),
                    "writeErrors": self.write_errors,
                    "captureFinished": self.end_time,
                    "captureStatus": "completed",
                },
            })

            try:
                write_json_atomic(self.all_data_path, document)
            except OSError as e:
                logger.error(f"Failed to write AllData.json for session {self.session_id}: {e}")
                return None

            self._guarded(self.log_path, append_line, self.log_path,
                          f"[{self.end_time}] Capture finished: {self.message_count} messages, "
                          f"{len(sensors)} sensors")

        logger.info(
            f"Session sink finalized for session {self.session_id}: "
            f"{self.message_count} messages, {len(sensors)} sensors"
        )
        return self.all_data_path

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "session_id": self.session_id,
                "message_count": self.message_count,
                "sensors": dict(self._sensor_counts),
                "write_errors": self.write_errors,
                "pending_flush": self.flush_policy.pending,
                "last_flush_time": self.last_flush_time,
                "closed": self._closed,
            }

    # ------------------------------------------------------------------
    # Sub-writes
    # ------------------------------------------------------------------

    def _guarded(self, target: Path, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except (OSError, ValueError, TypeError) as e:
            self.write_errors += 1
            error = WriteError(str(target), e)
            logger.warning(f"Session {self.session_id}: {error}")

    def _append_consolidated_csv(self, timestamp, topic, message, sensor_id, fields) -> None:
        append_line(self.traffic_csv_path, _csv_row(
            [timestamp, topic, message, sensor_id, fields["battery"], fields["linkquality"]]
        ))

    def _append_typed_csvs(self, timestamp, sensor_id, fields) -> None:
        battery, linkquality = fields["battery"], fields["linkquality"]
        if fields["temperature"] is not None:
            append_line(self.typed_csv_path("temperature"), _csv_row(
                [timestamp, sensor_id, fields["temperature"], battery, linkquality]
            ))
        if fields["humidity"] is not None:
            append_line(self.typed_csv_path("humidity"), _csv_row(
                [timestamp, sensor_id, fields["humidity"], battery, linkquality]
            ))
        if fields["motion"] is not None or fields["presence"] is not None:
            value = fields["motion"] if fields["motion"] is not None else fields["presence"]
            append_line(self.typed_csv_path("motion"), _csv_row(
                [timestamp, sensor_id, value, battery, linkquality]
            ))

    def _upsert_sensor_json(self, sensor_id, timestamp, topic, message) -> None:
        doc = self._sensor_docs.get(sensor_id)
        if doc is None:
            path = self.sensor_json_path(sensor_id)
            doc = read_json(path, default=None)
            if not isinstance(doc, dict):
                doc = self._new_sensor_doc(sensor_id)
            doc.setdefault("data", [])
            self._sensor_docs[sensor_id] = doc

        record: Dict[str, Any] = {
            "timestamp": timestamp,
            "topic": topic,
            "value": message,
            "payload": message,
        }
        if isinstance(message, dict):
            for key in METADATA_KEYS:
                if key in message:
                    record[key] = message[key]

        doc["data"].append(record)
        write_json_atomic(self.sensor_json_path(sensor_id), doc)

    def _append_sensor_csv(self, sensor_id, timestamp, topic, message, fields) -> None:
        path = self.sensor_csv_path(sensor_id)
        if not path.exists():
            path.write_text(_csv_header(SENSOR_CSV_HEADER), encoding="utf-8")

        value: Any = message
        if isinstance(message, dict):
            value = next((message[k] for k in PRIMARY_VALUE_KEYS if k in message), message)

        append_line(path, _csv_row([timestamp, topic, value, fields["battery"], fields["linkquality"]]))

    def _flush_locked(self) -> None:
        self.last_flush_time = iso_now()
        try:
            write_json_atomic(self.traffic_json_path, self._traffic_document())
        except OSError as e:
            self.write_errors += 1
            logger.warning(f"Session {self.session_id}: {WriteError(str(self.traffic_json_path), e)}")
        finally:
            self.flush_policy.mark_flushed()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _new_sensor_doc(self, sensor_id: str) -> Dict[str, Any]:
        return {
            "sensorId": sensor_id,
            "sessionId": self.session_id,
            "startTime": iso_now(),
            "data": [],
        }

    def _traffic_document(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "messages": list(self._recent),
            "messagesCount": self.message_count,
            "lastUpdateTime": self.last_flush_time or self.start_time,
        }

    def _collect_sensor_docs(self) -> Dict[str, Any]:
        """In-memory sensor documents plus any sensor JSON already on disk."""
        sensors: Dict[str, Any] = {}
        if self.sensor_dir.is_dir():
            for path in sorted(self.sensor_dir.glob("*.json")):
                try:
                    sensors[path.stem] = read_json(path)
                except (OSError, ValueError) as e:
                    logger.warning(f"Skipping unreadable sensor file {path}: {e}")
        for sensor_id, doc in self._sensor_docs.items():
            sensors[safe_sensor_filename(sensor_id)] = doc
        return sensors


def _csv_header(columns: List[str]) -> str:
    return ",".join(columns) + "\n"
