"""Shared fixtures for usbctl tests."""

from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence

import pytest

from usbctl.config_manager import ConfigManager
from usbctl.device_registry import DeviceRegistry
from usbctl.exceptions import ExecutionError
from usbctl.executor import ALLOWED_PROGRAMS, CommandResult

SAMPLE_LIST = """\
 - busid 1-1 (1234:5678)
   Foo Corp Widget

 - busid 1-2 (0bda:8153)
   unknown vendor : unknown product (0bda:8153)
"""

SAMPLE_LSUSB = """\
Bus 001 Device 001: ID 1d6b:0002 Linux Foundation 2.0 root hub
Bus 001 Device 003: ID 0bda:8153 Realtek Semiconductor Corp. RTL8153 Gigabit Ethernet Adapter
"""


class FakeExecutor:
    """Records calls and simulates usbip against an in-memory bind table."""

    def __init__(self, listing: str = SAMPLE_LIST, lsusb: str = SAMPLE_LSUSB):
        self.listing = listing
        self.lsusb = lsusb
        self.bound: set[str] = set()
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self.fail_with: Optional[CommandResult] = None
        self.raise_error: Optional[ExecutionError] = None
        self.on_list: Optional[Callable[[], None]] = None
        self._lock = threading.Lock()

    def resolve(self, program: str) -> Optional[str]:
        return f"/usr/sbin/{program}"

    def execute(self, program: str, args: Sequence[str] = ()) -> CommandResult:
        if program not in ALLOWED_PROGRAMS:
            raise ExecutionError(f"command not allowed: {program}")
        with self._lock:
            self.calls.append((program, tuple(args)))

        if program == "lsusb":
            return CommandResult(returncode=0, output=self.lsusb)

        if tuple(args[:1]) == ("list",):
            if self.on_list is not None:
                self.on_list()
            return CommandResult(returncode=0, output=self.listing)

        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_with is not None:
            return self.fail_with

        action, busid = args[0], args[-1]
        if action == "bind":
            if busid in self.bound:
                return CommandResult(
                    returncode=1,
                    output=f"usbip: error: device on busid {busid} is already bound to usbip-host\n",
                )
            self.bound.add(busid)
        elif action == "unbind":
            if busid not in self.bound:
                return CommandResult(
                    returncode=1,
                    output="usbip: error: device is not bound to usbip-host driver\n",
                )
            self.bound.discard(busid)
        return CommandResult(returncode=0, output="")

    def is_bound(self, busid: str) -> bool:
        return busid in self.bound

    def mutations(self) -> list[tuple[str, tuple[str, ...]]]:
        return [c for c in self.calls if c[1][:1] in (("bind",), ("unbind",))]


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def config_manager(tmp_path) -> ConfigManager:
    return ConfigManager(tmp_path / "config.yaml")


@pytest.fixture
def registry(executor, config_manager) -> DeviceRegistry:
    return DeviceRegistry(executor, is_bound=executor.is_bound, bound_store=config_manager)
