"""
Broker Connection Manager

Maintains a resilient connection to one of several MQTT broker endpoints.

EXECUTION MODEL:
- Background connect thread (threading.Event for shutdown)
- Ordered endpoint list, rotated on every failed attempt
- Exponential backoff between attempts, capped
- Bus client network thread delivers messages sequentially

ON EVERY (RE)CONNECT:
1. Subscribe the static topic set
2. Replay topic filters of active sessions
3. Publish a device-list request to the bridge

FAILURE SEMANTICS:
- Connection errors are logged, never raised to the host
- An unexpected disconnect re-enters the same reconnect loop
- A failing listener never affects other listeners
"""

import functools
import json
import ssl
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Set
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt
from loguru import logger

from .config import BrokerSettings
from .errors import BrokerConnectionError


EVENT_CONNECTED = "connected"
EVENT_DISCONNECTED = "disconnected"
EVENT_MESSAGE = "message"
EVENTS = (EVENT_CONNECTED, EVENT_DISCONNECTED, EVENT_MESSAGE)

DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883, "ws": 80, "wss": 443}


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """
    Delay before reconnect attempt number `attempt` (1-based).

    min(max_delay, base_delay * 2 ** (attempt - 1)): strictly increasing
    until the cap is reached.
    """
    if attempt < 1:
        return 0.0
    # Bound the exponent so very long outages cannot overflow
    exponent = min(attempt - 1, 32)
    return min(max_delay, base_delay * (2 ** exponent))


class BrokerClient(Protocol):
    """
    Minimal bus client surface used by the connection manager.

    Implementations call on_message(topic, payload_bytes) for every
    delivered message and on_connection_lost(reason) when an established
    connection drops.
    """

    on_message: Optional[Callable[[str, bytes], None]]
    on_connection_lost: Optional[Callable[[str], None]]

    def connect(self, timeout: float) -> None: ...

    def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def subscribe(self, topic: str) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    def publish(self, topic: str, payload: str) -> None: ...


class PahoBrokerClient:
    """
    BrokerClient backed by paho-mqtt.

    mqtt:// and mqtts:// use TCP, ws:// and wss:// use the websockets
    transport. Network I/O runs on paho's own loop thread.
    """

    def __init__(
        self,
        endpoint: str,
        client_id: str,
        keepalive: int = 60,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.endpoint = endpoint
        self.keepalive = keepalive
        self.on_message: Optional[Callable[[str, bytes], None]] = None
        self.on_connection_lost: Optional[Callable[[str], None]] = None

        parts = urlsplit(endpoint)
        scheme = (parts.scheme or "mqtt").lower()
        self._host = parts.hostname or "localhost"
        self._port = parts.port or DEFAULT_PORTS.get(scheme, 1883)
        self._ws_path = parts.path or "/mqtt"

        transport = "websockets" if scheme in ("ws", "wss") else "tcp"
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            transport=transport,
        )
        if transport == "websockets":
            self._client.ws_set_options(path=self._ws_path)
        if scheme in ("mqtts", "ssl", "wss"):
            self._client.tls_set(cert_reqs=ssl.CERT_REQUIRED)

        user = username or parts.username
        secret = password or parts.password
        if user:
            self._client.username_pw_set(user, secret)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._connected = threading.Event()
        self._connect_error: Optional[str] = None
        self._closing = False

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._connect_error = str(reason_code)
            return
        self._connect_error = None
        self._connected.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        was_connected = self._connected.is_set()
        self._connected.clear()
        if was_connected and not self._closing and self.on_connection_lost:
            self.on_connection_lost(str(reason_code))

    def _on_message(self, client, userdata, msg):
        if self.on_message:
            self.on_message(msg.topic, msg.payload)

    def connect(self, timeout: float) -> None:
        """
        Connect and wait for the broker acknowledgement.

        Raises:
            BrokerConnectionError: Refused, unreachable, or no CONNACK in time
        """
        self._closing = False
        try:
            self._client.connect(self._host, self._port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            raise BrokerConnectionError(self.endpoint, str(e))

        self._client.loop_start()
        if not self._connected.wait(timeout):
            reason = self._connect_error or f"no CONNACK within {timeout}s"
            self._closing = True
            self._client.loop_stop()
            self._client.disconnect()
            raise BrokerConnectionError(self.endpoint, reason)

    def disconnect(self) -> None:
        self._closing = True
        self._connected.clear()
        self._client.disconnect()
        self._client.loop_stop()

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def subscribe(self, topic: str) -> None:
        self._client.subscribe(topic)

    def unsubscribe(self, topic: str) -> None:
        self._client.unsubscribe(topic)

    def publish(self, topic: str, payload: str) -> None:
        self._client.publish(topic, payload)


ClientFactory = Callable[[str, str], BrokerClient]


class BrokerConnectionManager:
    """
    Resilient connection to the first reachable broker endpoint.

    LIFECYCLE:
    1. Create manager with BrokerSettings (and optionally a client factory)
    2. Register listeners with add_listener()
    3. Call start() to connect in the background
    4. Call stop() for shutdown (disconnects, stops retrying)

    CRITICAL:
    - Never raises connection errors to the host
    - Retries forever until stop() is called
    """

    def __init__(
        self,
        settings: BrokerSettings,
        client_factory: Optional[ClientFactory] = None,
    ):
        """
        Initialize broker connection manager.

        Args:
            settings: Broker endpoints, topics and backoff parameters
            client_factory: Builds a BrokerClient for (endpoint, client_id);
                defaults to PahoBrokerClient
        """
        if not settings.urls:
            raise ValueError("At least one broker endpoint is required")

        self.settings = settings
        self._client_factory = client_factory or self._paho_factory

        self._listeners: Dict[str, List[Callable[..., None]]] = {e: [] for e in EVENTS}
        self._session_topics: Dict[int, Set[str]] = {}

        self._client: Optional[BrokerClient] = None
        self._endpoint_index = 0
        self._attempt = 0
        self._last_error: Optional[str] = None
        self._connected_endpoint: Optional[str] = None
        self._connected_since: Optional[float] = None

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._reconnect_needed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _paho_factory(self, endpoint: str, client_id: str) -> BrokerClient:
        return PahoBrokerClient(
            endpoint,
            client_id=client_id,
            keepalive=self.settings.keepalive,
            username=self.settings.username,
            password=self.settings.password,
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, event: str, callback: Callable[..., None]) -> None:
        """
        Register a lifecycle listener.

        Args:
            event: "connected" (endpoint), "disconnected" (reason)
                or "message" (topic, payload)
            callback: Invoked on the bus client thread

        Raises:
            ValueError: Unknown event name
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown broker event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Broker listener for '{event}' failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Begin connecting in the background.

        Raises:
            RuntimeError: If already started
        """
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("BrokerConnectionManager is already running")

        self._stop_event.clear()
        self._reconnect_needed.set()
        self._thread = threading.Thread(
            target=self._run, name="broker-connect", daemon=True
        )
        self._thread.start()
        logger.info(f"Broker connection manager started for {len(self.settings.urls)} endpoint(s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._reconnect_needed.set()
        self.disconnect()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Broker connection manager stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._reconnect_needed.wait()
            if self._stop_event.is_set():
                break
            self._reconnect_needed.clear()
            self.connect()

    def connect(self) -> bool:
        """
        Try endpoints in order until one accepts or stop() is called.

        Each failure rotates to the next endpoint and waits
        backoff_delay(attempt) before retrying.

        Returns:
            True when connected, False when stopped first
        """
        while not self._stop_event.is_set():
            endpoint = self.settings.urls[self._endpoint_index % len(self.settings.urls)]
            client_id = f"{self.settings.client_id_prefix}-{int(time.time() * 1000)}"

            try:
                client = self._client_factory(endpoint, client_id)
                client.on_message = self._handle_message
                client.on_connection_lost = functools.partial(self._handle_connection_lost, client)
                logger.info(f"Connecting to broker {endpoint} (attempt {self._attempt + 1})")
                client.connect(self.settings.connect_timeout_seconds)
            except Exception as e:
                self._attempt += 1
                self._last_error = str(e)
                self._endpoint_index = (self._endpoint_index + 1) % len(self.settings.urls)
                delay = backoff_delay(
                    self._attempt,
                    self.settings.base_delay_seconds,
                    self.settings.max_delay_seconds,
                )
                logger.warning(
                    f"Broker connection to {endpoint} failed: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                if self._stop_event.wait(delay):
                    return False
                continue

            with self._lock:
                self._client = client
                self._connected_endpoint = endpoint
                self._connected_since = time.time()
                self._attempt = 0
                self._last_error = None

            logger.info(f"Connected to broker {endpoint}")
            self._on_connected()
            self._emit(EVENT_CONNECTED, endpoint)
            return True

        return False

    def _on_connected(self) -> None:
        for topic in self.settings.static_topics:
            self._safe_subscribe(topic)

        for topic in sorted(self._all_session_topics()):
            self._safe_subscribe(topic)

        self.request_devices()

    def _handle_connection_lost(self, client: BrokerClient, reason: str) -> None:
        with self._lock:
            current = self._client is client
            endpoint = self._connected_endpoint
            if current:
                self._client = None
                self._connected_endpoint = None
                self._connected_since = None
                self._last_error = reason

        # The lost client must not keep reconnecting on its own loop thread
        self._close_client(client)

        if not current:
            logger.debug(f"Ignoring connection loss from a replaced broker client: {reason}")
            return

        logger.warning(f"Broker connection to {endpoint} lost: {reason}")
        self._emit(EVENT_DISCONNECTED, reason)

        if not self._stop_event.is_set():
            self._reconnect_needed.set()

    @staticmethod
    def _close_client(client: BrokerClient) -> None:
        try:
            client.disconnect()
        except Exception as e:
            logger.warning(f"Error while closing lost broker client: {e}")

    def _handle_message(self, topic: str, payload: bytes) -> None:
        self._emit(EVENT_MESSAGE, topic, payload)

    def disconnect(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
            self._connected_endpoint = None
            self._connected_since = None

        if client is None:
            return

        try:
            client.disconnect()
        except Exception as e:
            logger.warning(f"Error while disconnecting from broker: {e}")
        self._emit(EVENT_DISCONNECTED, "requested")

    def is_connected(self) -> bool:
        with self._lock:
            client = self._client
        return client is not None and client.is_connected()

    # ------------------------------------------------------------------
    # Topics and publishing
    # ------------------------------------------------------------------

    def _safe_subscribe(self, topic: str) -> None:
        with self._lock:
            client = self._client
        if client is None:
            return
        try:
            client.subscribe(topic)
            logger.debug(f"Subscribed to topic {topic}")
        except Exception as e:
            logger.error(f"Failed to subscribe to topic {topic}: {e}")

    def subscribe(self, topic: str) -> None:
        """Subscribe now if connected. Static and session topics are replayed on reconnect."""
        self._safe_subscribe(topic)

    def publish(self, topic: str, payload: Any) -> bool:
        """
        Publish a message if connected.

        Args:
            topic: Destination topic
            payload: str, or any JSON-serializable object

        Returns:
            True if handed to the client, False otherwise
        """
        with self._lock:
            client = self._client
        if client is None:
            logger.warning(f"Not connected, dropping publish to topic {topic}")
            return False

        body = payload if isinstance(payload, str) else json.dumps(payload)
        try:
            client.publish(topic, body)
            return True
        except Exception as e:
            logger.error(f"Publish to topic {topic} failed: {e}")
            return False

    def request_devices(self) -> bool:
        """Ask the bridge to republish its device list."""
        return self.publish(self.settings.device_request_topic, "")

    def register_session_topics(self, session_id: int, sensor_ids: List[str]) -> None:
        """
        Register per-sensor topics of an active session.

        They are subscribed immediately (when connected) and replayed
        after every reconnect until unregistered.
        """
        topics = {f"{self.settings.topic_root}/{sensor_id}" for sensor_id in sensor_ids}
        with self._lock:
            self._session_topics[session_id] = topics
        for topic in sorted(topics):
            self._safe_subscribe(topic)

    def unregister_session_topics(self, session_id: int) -> None:
        with self._lock:
            topics = self._session_topics.pop(session_id, set())
            client = self._client
            still_needed = self._all_session_topics_locked()

        if client is None:
            return
        for topic in topics - still_needed:
            # Static wildcard subscriptions keep covering these topics
            if topic in self.settings.static_topics:
                continue
            try:
                client.unsubscribe(topic)
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from topic {topic}: {e}")

    def _all_session_topics(self) -> Set[str]:
        with self._lock:
            return self._all_session_topics_locked()

    def _all_session_topics_locked(self) -> Set[str]:
        result: Set[str] = set()
        for topics in self._session_topics.values():
            result |= topics
        return result

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "connected": self._client is not None and self._client.is_connected(),
                "endpoint": self._connected_endpoint,
                "endpoints": list(self.settings.urls),
                "attempt": self._attempt,
                "last_error": self._last_error,
                "connected_since": self._connected_since,
            }
