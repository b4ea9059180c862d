"""
Exceptions raised by usbctl.
"""

from __future__ import annotations


class UsbctlError(Exception):
    """Base class for usbctl errors."""


class ValidationError(UsbctlError, ValueError):
    """A busid or request body was rejected before any command ran."""


class ExecutionError(UsbctlError):
    """An external command could not be run."""
