"""
Configuration management for usbctl.

Handles loading and saving of the server settings and of the devices the
operator wants bound, so bindings survive a restart.
"""

from __future__ import annotations
import logging
import os
import threading
from pathlib import Path
from typing import Optional
import yaml

from .exceptions import ValidationError
from .executor import validate_busid
from .models import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "usbctl" / "config.yaml"


def default_config_path() -> Path:
    """Config path from USBCTL_CONFIG, or the per-user default."""
    override = os.environ.get("USBCTL_CONFIG")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


class ConfigManager:
    """Manages application configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else default_config_path()
        self._config: Optional[AppConfig] = None
        # bind/unbind run in worker threads
        self._lock = threading.RLock()

    @property
    def config(self) -> AppConfig:
        """Get current configuration, loading if necessary."""
        with self._lock:
            if self._config is None:
                self.load()
            return self._config  # type: ignore

    def load(self) -> AppConfig:
        """Load configuration from file."""
        with self._lock:
            if self.config_path.exists():
                try:
                    with open(self.config_path) as f:
                        data = yaml.safe_load(f) or {}
                    if not isinstance(data, dict):
                        raise ValueError("top level must be a mapping")

                    data["bound_devices"] = self._valid_busids(data.get("bound_devices") or [])
                    self._config = AppConfig(**data)
                    logger.info(f"Loaded configuration from {self.config_path}")

                except (OSError, TypeError, ValueError, yaml.YAMLError) as e:
                    logger.error(f"Error loading config from {self.config_path}: {e}")
                    self._config = AppConfig()
            else:
                logger.info(f"No config file found at {self.config_path}, using defaults")
                self._config = AppConfig()

            return self._config

    @staticmethod
    def _valid_busids(entries) -> list[str]:
        """Drop saved busids that would not pass validation."""
        if not isinstance(entries, list):
            logger.warning("Ignoring bound_devices: expected a list")
            return []
        busids: list[str] = []
        for entry in entries:
            try:
                busid = validate_busid(entry)
            except ValidationError as e:
                logger.warning(f"Ignoring saved device {entry!r}: {e}")
                continue
            if busid not in busids:
                busids.append(busid)
        return busids

    def save(self) -> None:
        """Save current configuration to file."""
        with self._lock:
            if self._config is None:
                return

            data = self._config.model_dump()

            try:
                self.config_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.config_path, "w") as f:
                    yaml.dump(data, f, default_flow_style=False, sort_keys=False)
                logger.info(f"Saved configuration to {self.config_path}")
            except OSError as e:
                logger.error(f"Error saving config to {self.config_path}: {e}")

    def get_bound_devices(self) -> list[str]:
        """Get the busids the operator wants bound."""
        return list(self.config.bound_devices)

    def add_bound_device(self, busid: str) -> None:
        """Remember a bound device."""
        busid = validate_busid(busid)
        with self._lock:
            if busid in self.config.bound_devices:
                return
            self.config.bound_devices.append(busid)
            self.save()

    def remove_bound_device(self, busid: str) -> None:
        """Forget a bound device."""
        with self._lock:
            if busid not in self.config.bound_devices:
                return
            self.config.bound_devices.remove(busid)
            self.save()


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """Get or create the global config manager."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(config_path)
    return _config_manager
