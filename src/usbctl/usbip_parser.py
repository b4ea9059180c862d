"""
Parse ``usbip list -l`` and ``lsusb`` output.

Turns the free-text device listing into DeviceRecord objects and resolves
"unknown vendor" descriptions through a vendor table built from lsusb.
"""

from __future__ import annotations
import logging
import re
from typing import Callable, Iterable, Optional

from .exceptions import ValidationError
from .executor import validate_busid
from .models import BUSID_MAX_LENGTH, INFO_MAX_LENGTH, DeviceRecord, sanitize_info

logger = logging.getLogger(__name__)

MAX_DEVICES = 32

# " - busid 1-1.2 (046d:c52b)"
HEADER_PATTERN = re.compile(r"^-?\s*busid\s+(\S+)")

# "unknown vendor : unknown product (0bda:8153)"
UNKNOWN_VENDOR_PATTERN = re.compile(
    r"unknown vendor.*\(([0-9a-f]{4}):([0-9a-f]{4})\)", re.IGNORECASE
)

# "Bus 001 Device 003: ID 0bda:8153 Realtek Semiconductor Corp. RTL8153"
LSUSB_PATTERN = re.compile(r"\bID\s+([0-9a-f]{4}):([0-9a-f]{4})\s+(.+)$", re.IGNORECASE)

BoundPredicate = Callable[[str], bool]


def _extract_busid(line: str) -> Optional[str]:
    """Return the raw busid token from a header line, or None."""
    match = HEADER_PATTERN.match(line.strip())
    if not match:
        return None
    return match.group(1).rstrip(":()")[:BUSID_MAX_LENGTH]


def _is_bound(busid: str, is_bound: Optional[BoundPredicate]) -> bool:
    if is_bound is None:
        return False
    try:
        return bool(is_bound(busid))
    except Exception as e:
        logger.warning(f"Could not determine bind state of {busid}: {e}")
        return False


def parse_device_list(
    output: str,
    is_bound: Optional[BoundPredicate] = None,
    limit: int = MAX_DEVICES,
) -> list[DeviceRecord]:
    """Parse usbip's local device listing.

    Header lines open a record, indented lines that follow are joined into
    its description. Never raises: bad entries are logged and skipped.

    Args:
        output: Raw text from ``usbip list -l``
        is_bound: Predicate telling whether a busid is claimed by usbip-host
        limit: Maximum number of records to return

    Returns:
        Records in the order the tool listed them
    """
    records: list[DeviceRecord] = []
    seen: set[str] = set()
    busid: Optional[str] = None
    info_parts: list[str] = []
    info_length = 0
    dropped = 0

    def close_record() -> None:
        if busid is None:
            return
        records.append(DeviceRecord(
            busid=busid,
            info=" ".join(info_parts),
            bound=_is_bound(busid, is_bound),
        ))

    for line in output.splitlines():
        if not line.strip():
            continue

        token = _extract_busid(line)
        if token is not None:
            close_record()
            busid, info_parts, info_length = None, [], 0

            if len(records) >= limit:
                dropped += 1
                continue
            try:
                validate_busid(token)
            except ValidationError as e:
                logger.warning(f"Ignoring device with malformed busid {token!r}: {e}")
                continue
            if token in seen:
                logger.warning(f"Ignoring duplicate busid {token}")
                continue

            seen.add(token)
            busid = token
            continue

        if busid is None or not line[0].isspace():
            continue

        text = sanitize_info(line)
        if not text or info_length >= INFO_MAX_LENGTH:
            continue
        info_parts.append(text)
        info_length += len(text) + 1

    close_record()

    if dropped:
        logger.warning(f"Device limit of {limit} reached, ignored {dropped} more")
    if not records and output.strip() and "busid" in output:
        logger.warning("usbip listed devices but none could be parsed")

    return records


def build_vendor_table(output: str) -> dict[str, str]:
    """Build a "vendor:product" -> description table from lsusb output."""
    table: dict[str, str] = {}
    for line in output.splitlines():
        match = LSUSB_PATTERN.search(line.strip())
        if not match:
            continue
        vendor_id, product_id, name = match.groups()
        name = sanitize_info(name)
        if name:
            table[f"{vendor_id.lower()}:{product_id.lower()}"] = name
    return table


def needs_enrichment(devices: Iterable[DeviceRecord]) -> bool:
    """True if any device description lacks a vendor name."""
    return any(UNKNOWN_VENDOR_PATTERN.search(d.info) for d in devices)


def enrich_devices(devices: list[DeviceRecord], table: dict[str, str]) -> list[DeviceRecord]:
    """Replace "unknown vendor" descriptions with names from the table.

    Devices without a table entry keep their original description.
    """
    enriched = []
    for device in devices:
        match = UNKNOWN_VENDOR_PATTERN.search(device.info)
        if match:
            key = f"{match.group(1).lower()}:{match.group(2).lower()}"
            name = table.get(key)
            if name:
                device = device.model_copy(update={"info": name})
        enriched.append(device)
    return enriched
