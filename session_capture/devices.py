"""
Device Registry

Holds the most recent device list published by the bus bridge
(`<root>/bridge/devices`) and answers identity lookups.

CRITICAL CONSTRAINTS:
- Pure state management (no network I/O)
- The bridge list is replaced wholesale on every publication
- Persistence is delegated to the StateCache
"""

from typing import Any, Dict, List, Optional
import threading

from loguru import logger


class DeviceRegistry:
    """
    Registry of bridge-reported devices.

    CARDINALITY: One entry per friendly_name (falls back to ieee_address).
    """

    def __init__(self):
        # Raw list as published by the bridge, order preserved
        self._devices: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def replace(self, devices: Any) -> int:
        """
        Replace the device list with a new bridge publication.

        Args:
            devices: Decoded payload of the device-list topic

        Returns:
            Number of devices now registered

        Non-list payloads are ignored with a warning.
        """
        if not isinstance(devices, list):
            logger.warning(f"Ignoring device list payload of type {type(devices).__name__}")
            return self.device_count()

        cleaned = [d for d in devices if isinstance(d, dict)]
        with self._lock:
            self._devices = cleaned

        logger.info(f"Device registry updated: {len(cleaned)} devices")
        return len(cleaned)

    def list_devices(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._devices)

    def get_device(self, identity: str) -> Optional[Dict[str, Any]]:
        """
        Look up a device by friendly name or IEEE address.

        Args:
            identity: Sensor identity or IEEE address

        Returns:
            Device entry if known, None otherwise
        """
        with self._lock:
            for device in self._devices:
                if identity in (device.get("friendly_name"), device.get("ieee_address")):
                    return device
        return None

    def device_count(self) -> int:
        with self._lock:
            return len(self._devices)
