"""
USB/IP device monitoring.

Polls usbip for device changes and pushes new snapshots to event stream
subscribers. Uses pyudev to find out which devices are held by the
usbip-host driver.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Optional
import pyudev

from .device_registry import DeviceRegistry
from .subscriber_hub import SubscriberHub

logger = logging.getLogger(__name__)

USBIP_HOST_DRIVER = "usbip-host"
POLL_INTERVAL = 3.0


class DriverProbe:
    """Tells whether a USB device is claimed by a given kernel driver."""

    def __init__(self, driver: str = USBIP_HOST_DRIVER, context: Optional[pyudev.Context] = None):
        self.driver = driver
        self._context = context

    @property
    def context(self) -> pyudev.Context:
        if self._context is None:
            self._context = pyudev.Context()
        return self._context

    def __call__(self, busid: str) -> bool:
        try:
            device = pyudev.Devices.from_name(self.context, "usb", busid)
        except pyudev.DeviceNotFoundError:
            return False
        return device.driver == self.driver


class DevicePoller:
    """Periodically refreshes the registry and broadcasts changes."""

    def __init__(
        self,
        registry: DeviceRegistry,
        hub: SubscriberHub,
        interval: float = POLL_INTERVAL,
    ):
        self.registry = registry
        self.hub = hub
        self.interval = interval
        self._running = False
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    async def poll_once(self) -> bool:
        """Refresh once and broadcast if the device list changed.

        Returns:
            True if a broadcast was sent
        """
        loop = asyncio.get_running_loop()
        # The registry lock is only taken once usbip has finished
        changed = await loop.run_in_executor(None, self.registry.refresh)

        if not changed or self._stop.is_set():
            return False

        self.publish()
        return True

    def publish(self) -> int:
        """Broadcast the registry's current snapshot with its version."""
        version, devices = self.registry.versioned_snapshot()
        delivered = self.hub.broadcast_devices(devices, version)
        logger.debug(f"Device list v{version} sent to {delivered} subscriber(s)")
        return delivered

    async def start_monitoring(self) -> None:
        """Poll until stop_monitoring() is called."""
        if self._running:
            return

        self._running = True
        self._stop.clear()
        logger.info(f"Device polling started (every {self.interval:g}s)")

        while not self._stop.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in device poller: {e}")

            try:
                await asyncio.wait_for(self._stop.wait(), self.interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break

        self._running = False
        logger.info("Device polling stopped")

    def stop_monitoring(self) -> None:
        """Stop polling; no broadcast is sent after this returns."""
        self._stop.set()
