"""
In-memory registry of USB/IP devices.

Owns the current device snapshot and performs bind/unbind operations through
the command executor. All methods block and are safe to call from several
threads at once.
"""

from __future__ import annotations
import logging
import threading
from typing import Iterable, Optional, Protocol

from .exceptions import ExecutionError
from .executor import LSUSB, USBIP, CommandExecutor, summarize_failure, validate_busid
from .models import DeviceRecord, OperationResult
from .usbip_parser import (
    MAX_DEVICES,
    BoundPredicate,
    build_vendor_table,
    enrich_devices,
    needs_enrichment,
    parse_device_list,
)

logger = logging.getLogger(__name__)

Snapshot = tuple[DeviceRecord, ...]


class BoundDeviceStore(Protocol):
    """Persists the set of devices the operator wants bound."""

    def get_bound_devices(self) -> list[str]: ...

    def add_bound_device(self, busid: str) -> None: ...

    def remove_bound_device(self, busid: str) -> None: ...


def devices_changed(old: Snapshot, new: Snapshot) -> bool:
    """Compare two snapshots position by position on (busid, bound)."""
    if len(old) != len(new):
        return True
    return any(
        a.busid != b.busid or a.bound != b.bound
        for a, b in zip(old, new)
    )


class DeviceRegistry:
    """Holds the latest device list and mutates device bindings."""

    def __init__(
        self,
        executor: CommandExecutor,
        is_bound: Optional[BoundPredicate] = None,
        bound_store: Optional[BoundDeviceStore] = None,
        max_devices: int = MAX_DEVICES,
    ):
        self.executor = executor
        self.is_bound = is_bound
        self.bound_store = bound_store
        self.max_devices = max_devices
        self._devices: Snapshot = ()
        self._version = 0
        # _lock guards the snapshot swap, _refresh_lock keeps refreshes in order
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._inventory_error_shown = False

    @property
    def version(self) -> int:
        """Number of snapshots swapped in so far."""
        with self._lock:
            return self._version

    def snapshot(self) -> Snapshot:
        """Get the current device list as an immutable tuple."""
        with self._lock:
            return self._devices

    def versioned_snapshot(self) -> tuple[int, Snapshot]:
        """Get the current version and device list as one consistent pair."""
        with self._lock:
            return self._version, self._devices

    def refresh(self) -> bool:
        """Re-read the device list from usbip.

        Returns:
            True if the list differs from the previous one
        """
        with self._refresh_lock:
            devices = self._scan()
            if devices is None:
                return False

            new = tuple(devices)
            with self._lock:
                old = self._devices
                self._devices = new
                self._version += 1

        changed = devices_changed(old, new)
        if changed:
            logger.info(f"Device list changed: {len(new)} device(s)")
        return changed

    def _scan(self) -> Optional[list[DeviceRecord]]:
        """Run the inventory command; None if it could not be run."""
        try:
            result = self.executor.execute(USBIP, ["list", "-l"])
        except ExecutionError as e:
            self._report_inventory_error(str(e))
            return None

        if not result.ok:
            self._report_inventory_error(summarize_failure(result.output))
            return None

        if self._inventory_error_shown:
            logger.info("usbip device listing recovered")
            self._inventory_error_shown = False

        devices = parse_device_list(result.output, self.is_bound, self.max_devices)

        if needs_enrichment(devices):
            devices = enrich_devices(devices, self._vendor_table())

        return devices

    def _report_inventory_error(self, message: str) -> None:
        # Polling repeats every few seconds, only log the first failure
        if self._inventory_error_shown:
            logger.debug(f"Failed to list devices: {message}")
            return
        logger.error(f"Failed to list devices: {message}. Ensure usbip tools are installed")
        self._inventory_error_shown = True

    def _vendor_table(self) -> dict[str, str]:
        try:
            result = self.executor.execute(LSUSB)
        except ExecutionError as e:
            logger.debug(f"Vendor lookup unavailable: {e}")
            return {}
        if not result.ok:
            logger.debug(f"lsusb exited with status {result.returncode}")
            return {}
        return build_vendor_table(result.output)

    def bind(self, busid: str) -> OperationResult:
        """Export a device through usbip-host.

        Raises:
            ValidationError: if busid is malformed; nothing is run.
        """
        return self._set_binding(busid, bind=True)

    def unbind(self, busid: str) -> OperationResult:
        """Return a device to its regular driver.

        Raises:
            ValidationError: if busid is malformed; nothing is run.
        """
        return self._set_binding(busid, bind=False)

    def _set_binding(self, busid: str, bind: bool) -> OperationResult:
        busid = validate_busid(busid)
        action = "bind" if bind else "unbind"
        logger.info(f"Attempting to {action} device: {busid}")

        try:
            result = self.executor.execute(USBIP, [action, "-b", busid])
        except ExecutionError as e:
            logger.error(f"Failed to {action} device {busid}: {e}")
            return OperationResult(success=False, error=str(e))

        if not result.ok:
            message = summarize_failure(result.output)
            logger.error(f"Failed to {action} device {busid}: {message}")
            return OperationResult(success=False, error=message)

        logger.info(f"Successfully {'bound' if bind else 'unbound'} device: {busid}")
        self.refresh()

        if self.bound_store is not None:
            try:
                if bind:
                    self.bound_store.add_bound_device(busid)
                else:
                    self.bound_store.remove_bound_device(busid)
            except Exception as e:
                logger.exception(f"Error saving bound devices: {e}")

        version, devices = self.versioned_snapshot()
        return OperationResult(success=True, devices=list(devices), version=version)

    def reconcile(self, desired: Iterable[str]) -> list[str]:
        """Bind every desired device that is present but not bound.

        Returns:
            The busids that were bound
        """
        current = {d.busid: d for d in self.snapshot()}
        bound = []
        for busid in desired:
            device = current.get(busid)
            if device is None:
                logger.info(f"Saved device {busid} is not connected, skipping")
                continue
            if device.bound:
                continue
            result = self.bind(busid)
            if result.success:
                bound.append(busid)
            else:
                logger.warning(f"Could not restore binding of {busid}: {result.error}")
        return bound
