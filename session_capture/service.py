"""
Capture Service Manager

Wires configuration into the orchestrator components and owns their
lifecycle (used by the FastAPI lifespan and the CLI).

LIFECYCLE:
1. initialize(): build store, caches, router, broker, supervisor,
   registry, locator, archiver; load persisted state
2. start(): connect to the broker, start housekeeping
3. stop(): stop the active session and every encoder, save state,
   disconnect

CRITICAL:
- A broker that cannot be reached never blocks startup
- broker.enabled = false runs video-only (no broker manager at all)
- stop() must not hang: every wait is bounded
"""

import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from .archiver import Archiver, ExportProgressTracker
from .broker import EVENT_MESSAGE, BrokerConnectionManager, ClientFactory
from .config import CaptureConfig
from .devices import DeviceRegistry
from .locator import ArtifactLocator
from .message_cache import MessageCache
from .registry import SessionRegistry
from .router import TopicRouter
from .state_cache import StateCache
from .store import SessionStore
from .supervisor import CommandFactory, RecordingSupervisor


class CaptureServiceManager:
    """
    Owner of every long-lived orchestrator component.
    """

    def __init__(
        self,
        config: CaptureConfig,
        broker_client_factory: Optional[ClientFactory] = None,
        command_factory: Optional[CommandFactory] = None,
        housekeeping_interval_seconds: float = 5.0,
    ):
        self.config = config
        self._broker_client_factory = broker_client_factory
        self._command_factory = command_factory
        self.housekeeping_interval_seconds = housekeeping_interval_seconds

        self.store: Optional[SessionStore] = None
        self.message_cache: Optional[MessageCache] = None
        self.device_registry: Optional[DeviceRegistry] = None
        self.state_cache: Optional[StateCache] = None
        self.router: Optional[TopicRouter] = None
        self.broker: Optional[BrokerConnectionManager] = None
        self.supervisor: Optional[RecordingSupervisor] = None
        self.registry: Optional[SessionRegistry] = None
        self.locator: Optional[ArtifactLocator] = None
        self.archiver: Optional[Archiver] = None
        self.export_progress: Optional[ExportProgressTracker] = None

        self._initialized = False
        self._running = False
        self._stop_event = threading.Event()
        self._housekeeping: Optional[threading.Thread] = None

    def initialize(self) -> None:
        """
        Build every component and load persisted state.

        Raises:
            StorageError: Storage directories cannot be created
        """
        if self._initialized:
            return

        config = self.config
        for directory in config.storage.all_dirs():
            directory.mkdir(parents=True, exist_ok=True)

        self.store = SessionStore(config.storage.data_dir)
        self.store.load()

        self.message_cache = MessageCache(config.sink.message_cache_size)
        self.device_registry = DeviceRegistry()
        self.state_cache = StateCache(
            config.storage.data_dir,
            self.message_cache,
            self.device_registry,
            save_every_messages=config.sink.flush_every_messages,
            save_interval_seconds=config.sink.flush_interval_seconds,
            backup_interval_seconds=config.sink.backup_interval_seconds,
            max_backups=config.sink.max_backups,
        )
        self.state_cache.load()

        self.router = TopicRouter(
            self.message_cache,
            self.device_registry,
            state_cache=self.state_cache,
            device_list_topic=config.broker.device_list_topic,
        )

        if config.broker.enabled:
            self.broker = BrokerConnectionManager(config.broker, self._broker_client_factory)
            self.broker.add_listener(EVENT_MESSAGE, self.router.on_message)
        else:
            logger.warning("Broker disabled by configuration, running video-only")

        self.supervisor = RecordingSupervisor(
            config.recorder,
            config.storage.recordings_dir,
            command_factory=self._command_factory,
        )
        self.registry = SessionRegistry(
            config, self.store, self.router, self.supervisor, broker=self.broker
        )
        self.registry.recover()

        self.locator = ArtifactLocator(config, self.store)
        self.export_progress = ExportProgressTracker()
        self.archiver = Archiver(config, self.export_progress)

        self._initialized = True
        logger.info(
            f"Capture service initialized: sessions at {Path(config.storage.sessions_dir)}, "
            f"{len(config.cameras)} cameras configured"
        )

    def start(self) -> None:
        if not self._initialized:
            self.initialize()
        if self._running:
            logger.warning("Capture service is already running, ignoring start()")
            return

        if self.broker is not None:
            self.broker.start()

        self._stop_event.clear()
        self._housekeeping = threading.Thread(
            target=self._housekeeping_loop, name="capture-housekeeping", daemon=True
        )
        self._housekeeping.start()
        self._running = True
        logger.info("Capture service started")

    def stop(self) -> None:
        if not self._running:
            logger.info("Capture service not running, nothing to stop")
            return

        logger.info("Stopping capture service")
        self._stop_event.set()
        if self._housekeeping is not None:
            self._housekeeping.join(timeout=self.housekeeping_interval_seconds + 1)
            self._housekeeping = None

        try:
            self.registry.shutdown()
        except Exception as e:
            logger.error(f"Error stopping sessions during shutdown: {e}")

        self.state_cache.save()
        if self.broker is not None:
            self.broker.stop()

        self._running = False
        logger.info("Capture service stopped")

    def _housekeeping_loop(self) -> None:
        """
        Time-based flush/save triggers for quiet periods.

        Message-driven triggers live in the router and sinks; this loop
        covers the "or every T seconds" half when no traffic arrives.
        """
        while not self._stop_event.wait(self.housekeeping_interval_seconds):
            try:
                self.state_cache.maybe_save()
                active = self.registry.get_active_session()
                if active is not None:
                    sink = self.registry.get_sink(active.id)
                    if sink is not None:
                        sink.flush_if_due()
            except Exception as e:
                logger.error(f"Housekeeping cycle failed, will retry: {e}")

    @property
    def is_running(self) -> bool:
        return self._running
