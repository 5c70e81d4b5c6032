"""
Broker State Cache

Persists the broker-side view (topics seen, rolling message cache, bridge
device list) under data_dir so a restart resumes with warm state.

FILES (under data_dir):
- mqtt-messages.json: {topic: [cached message, ...]}
- mqtt-topics.json: [topic, ...]
- zigbee-devices.json: bridge device list
- backups/: timestamped copies of messages and devices, newest N kept

FAILURE SEMANTICS:
- Every save/load/backup failure is logged and swallowed
- A corrupt file on load is skipped; the others still load
"""

import shutil
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set

from loguru import logger

from .devices import DeviceRegistry
from .fileio import read_json, write_json_atomic
from .message_cache import MessageCache


MESSAGES_FILE = "mqtt-messages.json"
TOPICS_FILE = "mqtt-topics.json"
DEVICES_FILE = "zigbee-devices.json"
BACKUP_PREFIXES = ("mqtt-messages-", "zigbee-devices-")


class StateCache:
    """
    Save/load of broker state with a hybrid save trigger.

    should_save() fires when save_every_messages messages were recorded
    since the last save, or save_interval_seconds elapsed, whichever first.
    Saves, backups and the trigger share one lock: the bus client thread
    and the housekeeping thread both drive this object.
    """

    def __init__(
        self,
        data_dir: str,
        message_cache: MessageCache,
        device_registry: DeviceRegistry,
        save_every_messages: int = 3,
        save_interval_seconds: float = 30.0,
        backup_interval_seconds: float = 1800.0,
        max_backups: int = 10,
    ):
        self.data_dir = Path(data_dir)
        self.backup_dir = self.data_dir / "backups"
        self.message_cache = message_cache
        self.device_registry = device_registry

        self.save_every_messages = save_every_messages
        self.save_interval_seconds = save_interval_seconds
        self.backup_interval_seconds = backup_interval_seconds
        self.max_backups = max_backups

        self._topics: Set[str] = set()
        self._pending = 0
        self._last_save = time.monotonic()
        self._last_backup = time.monotonic()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_topic(self, topic: str) -> None:
        with self._lock:
            self._topics.add(topic)
            self._pending += 1

    def topics(self) -> List[str]:
        with self._lock:
            known = set(self._topics)
        return sorted(known | set(self.message_cache.topics()))

    def should_save(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        with self._lock:
            if self._pending >= self.save_every_messages:
                return True
            return self._pending > 0 and (now - self._last_save) >= self.save_interval_seconds

    def maybe_save(self, now: Optional[float] = None) -> bool:
        """Save if the hybrid trigger fired. Returns True when a save ran."""
        now = time.monotonic() if now is None else now
        saved = False
        with self._lock:
            if self.should_save(now):
                self.save()
                saved = True
            if (now - self._last_backup) >= self.backup_interval_seconds:
                self.backup()
                self._last_backup = now
        return saved

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> None:
        with self._lock:
            try:
                write_json_atomic(self.data_dir / MESSAGES_FILE, self.message_cache.snapshot(), indent=None)
                write_json_atomic(self.data_dir / TOPICS_FILE, self.topics(), indent=None)
                logger.debug(f"Broker state saved: {len(self._topics)} topics")
            except OSError as e:
                logger.error(f"Failed to save broker state to {self.data_dir}: {e}")
            finally:
                self._pending = 0
                self._last_save = time.monotonic()

    def save_devices(self) -> None:
        with self._lock:
            try:
                write_json_atomic(self.data_dir / DEVICES_FILE, self.device_registry.list_devices(), indent=None)
                logger.debug(f"Device list saved: {self.device_registry.device_count()} devices")
            except OSError as e:
                logger.error(f"Failed to save device list: {e}")

    def load(self) -> None:
        """Load persisted state. Each file is loaded independently."""
        try:
            messages = read_json(self.data_dir / MESSAGES_FILE, default={})
            if isinstance(messages, dict):
                count = self.message_cache.restore(messages)
                logger.info(f"Loaded {count} cached messages for {len(messages)} topics")
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load message cache: {e}")

        try:
            topics = read_json(self.data_dir / TOPICS_FILE, default=[])
            if isinstance(topics, list):
                with self._lock:
                    self._topics.update(t for t in topics if isinstance(t, str))
                logger.info(f"Loaded {len(self._topics)} known topics")
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load topic list: {e}")

        try:
            devices = read_json(self.data_dir / DEVICES_FILE, default=None)
            if devices is not None:
                self.device_registry.replace(devices)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load device list: {e}")

    def backup(self) -> None:
        """Copy messages and devices into backups/ and prune old copies."""
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
        with self._lock:
            try:
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                for name, prefix in ((MESSAGES_FILE, "mqtt-messages-"), (DEVICES_FILE, "zigbee-devices-")):
                    source = self.data_dir / name
                    if source.exists():
                        shutil.copyfile(source, self.backup_dir / f"{prefix}{stamp}.json")
                self._prune_backups()
                logger.info(f"Broker state backup created: {stamp}")
            except OSError as e:
                logger.error(f"Failed to back up broker state: {e}")

    def _prune_backups(self) -> None:
        for prefix in BACKUP_PREFIXES:
            files = sorted(
                self.backup_dir.glob(f"{prefix}*.json"),
                key=lambda p: p.stat().st_mtime,
                reverse=True,
            )
            for stale in files[self.max_backups:]:
                stale.unlink()
                logger.debug(f"Removed old backup {stale.name}")
