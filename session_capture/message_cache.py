"""
Topic Message Cache Module

Fixed-capacity, per-topic rolling cache of recent bus messages.
This module has NO imports from paho-mqtt, FastAPI or the session layer.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import threading


@dataclass
class CachedMessage:
    """
    A single cached bus message.

    Attributes:
        topic: Full topic the message arrived on
        payload: Decoded payload (dict/list for JSON, str otherwise)
        timestamp: ISO-8601 receive time
    """
    topic: str
    payload: Any
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"topic": self.topic, "payload": self.payload, "timestamp": self.timestamp}


class TopicRingBuffer:
    """
    Fixed-size ring buffer for one topic.

    Design:
    - Overwrite oldest message when full
    - Single writer (bus network thread)
    - Readers take a snapshot under the lock
    """

    def __init__(self, topic: str, capacity: int = 100):
        self.topic = topic
        self.capacity = capacity

        self.slots: List[Optional[CachedMessage]] = [None] * capacity
        self._write_pos = 0
        self._lock = threading.Lock()

    def push(self, message: CachedMessage) -> None:
        with self._lock:
            self.slots[self._write_pos] = message
            self._write_pos = (self._write_pos + 1) % self.capacity

    def get_all(self) -> List[CachedMessage]:
        """
        Get cached messages, oldest first.

        Returns:
            List of cached messages (may be empty)
        """
        with self._lock:
            ordered = self.slots[self._write_pos:] + self.slots[:self._write_pos]
            return [slot for slot in ordered if slot is not None]


class MessageCache:
    """
    Per-topic message cache plus the set of topics seen.

    Holds one TopicRingBuffer per topic. Topics are never forgotten
    while the process runs; they are persisted by the state cache.
    """

    def __init__(self, capacity_per_topic: int = 100):
        self.capacity_per_topic = capacity_per_topic
        self._buffers: Dict[str, TopicRingBuffer] = {}
        self._lock = threading.Lock()

    def _buffer_for(self, topic: str) -> TopicRingBuffer:
        with self._lock:
            buffer = self._buffers.get(topic)
            if buffer is None:
                buffer = TopicRingBuffer(topic, self.capacity_per_topic)
                self._buffers[topic] = buffer
            return buffer

    def add(self, topic: str, payload: Any, timestamp: str) -> CachedMessage:
        """
        Append a message to its topic buffer (evicting the oldest when full).

        Args:
            topic: Full topic
            payload: Decoded payload
            timestamp: ISO-8601 receive time

        Returns:
            The cached message
        """
        message = CachedMessage(topic=topic, payload=payload, timestamp=timestamp)
        self._buffer_for(topic).push(message)
        return message

    def get_messages(self, topic: str) -> List[CachedMessage]:
        with self._lock:
            buffer = self._buffers.get(topic)
        return buffer.get_all() if buffer else []

    def topics(self) -> List[str]:
        with self._lock:
            return sorted(self._buffers.keys())

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        """Serializable {topic: [message, ...]} view for persistence."""
        with self._lock:
            buffers = list(self._buffers.items())
        return {topic: [m.to_dict() for m in buffer.get_all()] for topic, buffer in buffers}

    def restore(self, data: Dict[str, List[Dict[str, Any]]]) -> int:
        """
        Load a persisted snapshot.

        Returns:
            Number of messages restored
        """
        restored = 0
        for topic, messages in data.items():
            if not isinstance(messages, list):
                continue
            for entry in messages[-self.capacity_per_topic:]:
                if not isinstance(entry, dict):
                    continue
                self.add(topic, entry.get("payload"), entry.get("timestamp", ""))
                restored += 1
        return restored
