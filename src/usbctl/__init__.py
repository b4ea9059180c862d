"""
usbctl - USB/IP device web manager.

A web-based tool for sharing USB devices over USB/IP: lists the devices
usbip can export, binds and unbinds them, and pushes live updates to the
browser.
"""

__version__ = "1.0.0"
__all__ = ["run_server", "create_app"]

from .main import create_app, run_server
