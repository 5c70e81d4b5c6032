"""
Topic Router

Demultiplexes inbound bus messages into session sinks.

EXECUTION MODEL:
- on_message() is called from the bus client thread, one message at a time
- Routing is O(active sessions), effectively O(1) with a single active session

STEPS PER MESSAGE:
1. Decode payload as JSON, falling back to text
2. Append to the rolling per-topic cache and record the topic
3. Match every registered session filter
4. Derive the sensor identity from the topic
5. Dispatch to each matching sink
6. Device-list topic updates the device registry (persisted immediately)
7. Save broker state on the hybrid trigger

FAILURE SEMANTICS:
- An exception in one step is logged; nothing escapes into the client thread
- A failing sink never prevents dispatch to the other sinks
"""

import json
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from .devices import DeviceRegistry
from .fileio import iso_now
from .message_cache import MessageCache
from .sink import SessionSink
from .state_cache import StateCache


GENERIC_SUFFIXES = frozenset({"get", "set", "state", "availability"})

_UNSAFE_IDENTITY = re.compile(r"[^A-Za-z0-9_-]")


def extract_sensor_id(topic: str) -> str:
    """
    Derive a sensor identity from a topic.

    Takes the last non-empty path segment, or the second-to-last when
    the last one is a generic suffix (get/set/state/availability).

    Examples:
        zigbee2mqtt/TEMP-1 -> TEMP-1
        zigbee2mqtt/TEMP-1/get -> TEMP-1
        zigbee2mqtt/living room/availability -> living room
        sensor -> sensor
    """
    segments = [s for s in topic.split("/") if s]
    if not segments:
        return _UNSAFE_IDENTITY.sub("_", topic) or "unknown"

    if len(segments) >= 2 and segments[-1].lower() in GENERIC_SUFFIXES:
        return segments[-2]
    return segments[-1]


def decode_payload(raw_payload: Any) -> Any:
    """
    Decode a raw payload as JSON, falling back to text.

    Bytes are decoded as UTF-8 (invalid sequences replaced).
    """
    if isinstance(raw_payload, (bytes, bytearray)):
        text = bytes(raw_payload).decode("utf-8", errors="replace")
    else:
        text = str(raw_payload)

    try:
        return json.loads(text)
    except ValueError:
        return text


@dataclass
class SessionRoute:
    """
    A session's registration with the router.

    Attributes:
        session_id: Owning session
        sensor_ids: Filter; empty means capture-all
        sink: Destination sink (exclusively owned by the session)
        routed: Messages dispatched so far
    """
    session_id: int
    sensor_ids: List[str]
    sink: SessionSink
    routed: int = 0
    created_at: str = field(default_factory=iso_now)

    def matches(self, topic: str) -> bool:
        if not self.sensor_ids:
            return True
        return any(sensor_id in topic for sensor_id in self.sensor_ids)


class TopicRouter:
    """
    Routes bus traffic to session sinks and keeps the broker-side caches.

    CRITICAL:
    - Registration changes are lock-guarded; dispatch works on a snapshot
    - No network I/O (publishing belongs to the connection manager)
    """

    def __init__(
        self,
        message_cache: MessageCache,
        device_registry: DeviceRegistry,
        state_cache: Optional[StateCache] = None,
        device_list_topic: str = "zigbee2mqtt/bridge/devices",
    ):
        self.message_cache = message_cache
        self.device_registry = device_registry
        self.state_cache = state_cache
        self.device_list_topic = device_list_topic

        self._routes: Dict[int, SessionRoute] = {}
        self._lock = threading.Lock()
        self._total_messages = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_session(self, session_id: int, sensor_ids: List[str], sink: SessionSink) -> None:
        with self._lock:
            self._routes[session_id] = SessionRoute(session_id, list(sensor_ids), sink)
        filter_text = ", ".join(sensor_ids) if sensor_ids else "all topics"
        logger.info(f"Router registered session {session_id} ({filter_text})")

    def unregister_session(self, session_id: int) -> bool:
        """
        Remove a session filter.

        Returns:
            True if removed, False if it was not registered
        """
        with self._lock:
            route = self._routes.pop(session_id, None)
        if route is None:
            return False
        logger.info(f"Router unregistered session {session_id} after {route.routed} messages")
        return True

    def active_session_ids(self) -> List[int]:
        with self._lock:
            return list(self._routes.keys())

    # ------------------------------------------------------------------
    # Message path
    # ------------------------------------------------------------------

    def on_message(self, topic: str, raw_payload: Any) -> int:
        """
        Handle one inbound bus message.

        Args:
            topic: Full topic
            raw_payload: Payload as received (bytes or str)

        Returns:
            Number of sinks the message was dispatched to
        """
        timestamp = iso_now()
        dispatched = 0

        try:
            payload = decode_payload(raw_payload)
        except Exception as e:
            logger.error(f"Failed to decode payload on topic {topic}: {e}")
            return 0

        self._total_messages += 1

        try:
            self.message_cache.add(topic, payload, timestamp)
            if self.state_cache is not None:
                self.state_cache.record_topic(topic)
        except Exception as e:
            logger.error(f"Failed to cache message on topic {topic}: {e}")

        with self._lock:
            routes = [r for r in self._routes.values() if r.matches(topic)]

        if routes:
            sensor_id = extract_sensor_id(topic)
            for route in routes:
                try:
                    route.sink.write(sensor_id, topic, payload, timestamp)
                    route.routed += 1
                    dispatched += 1
                except Exception as e:
                    logger.error(
                        f"Sink of session {route.session_id} failed on topic {topic}: {e}"
                    )
            logger.debug(f"Routed topic {topic} (sensor {sensor_id}) to {dispatched} session(s)")

        if topic == self.device_list_topic:
            try:
                self.device_registry.replace(payload)
                if self.state_cache is not None:
                    self.state_cache.save_devices()
            except Exception as e:
                logger.error(f"Failed to update device registry: {e}")

        if self.state_cache is not None:
            try:
                self.state_cache.maybe_save()
            except Exception as e:
                logger.error(f"Failed to save broker state: {e}")

        return dispatched

    def topics(self) -> List[str]:
        if self.state_cache is not None:
            return self.state_cache.topics()
        return self.message_cache.topics()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            routes = {sid: r.routed for sid, r in self._routes.items()}
        return {
            "total_messages": self._total_messages,
            "topics": len(self.topics()),
            "sessions": routes,
        }
