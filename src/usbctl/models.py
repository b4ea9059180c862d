"""
Pydantic models for USB/IP devices, operations and configuration.

Defines the data structures shared by the registry, the HTTP layer and the
configuration store.
"""

from __future__ import annotations
import re
from typing import Iterable, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Limits of a single device record
BUSID_MAX_LENGTH = 63
INFO_MAX_LENGTH = 255

# Leading digit so a busid can never look like a command-line option
BUSID_PATTERN = re.compile(r"[0-9][0-9.\-]{0,%d}" % (BUSID_MAX_LENGTH - 1))
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_info(text: str) -> str:
    """Strip control characters, collapse whitespace and cap the length."""
    cleaned = _CONTROL_CHARS.sub(" ", text)
    cleaned = " ".join(cleaned.split())
    return cleaned[:INFO_MAX_LENGTH]


class DeviceRecord(BaseModel):
    """A USB device as reported by ``usbip list -l``."""

    model_config = ConfigDict(frozen=True)

    busid: str = Field(description="Bus position e.g. '1-1.2'")
    info: str = Field(default="", description="Vendor and product description")
    bound: bool = Field(default=False, description="Claimed by usbip-host")

    @field_validator("busid")
    @classmethod
    def _check_busid(cls, value: str) -> str:
        if not BUSID_PATTERN.fullmatch(value):
            raise ValueError("invalid busid")
        return value

    @field_validator("info")
    @classmethod
    def _clean_info(cls, value: str) -> str:
        return sanitize_info(value)


class BindRequest(BaseModel):
    """Body of a bind or unbind request."""

    busid: str


class OperationResult(BaseModel):
    """Outcome of a bind or unbind operation."""

    success: bool
    error: Optional[str] = None
    devices: list[DeviceRecord] = Field(default_factory=list)
    version: Optional[int] = Field(default=None, description="Registry version of devices")

    def to_response(self) -> dict:
        """Convert to the JSON body sent to the browser."""
        if self.success:
            return {
                "status": "success",
                "devices": [d.model_dump() for d in self.devices],
            }
        return {"status": "failed", "error": self.error or "Unknown error"}


class AppConfig(BaseModel):
    """Application configuration."""

    port: int = Field(default=11980, ge=1, le=65535)
    host: str = Field(default="0.0.0.0")
    poll_interval: float = Field(default=3.0, gt=0)
    verbose: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)
    bound_devices: list[str] = Field(default_factory=list)


def devices_to_json(devices: Iterable[DeviceRecord]) -> list[dict]:
    """Serialize a device snapshot for the frontend."""
    return [d.model_dump() for d in devices]
