"""Tests for usbip and lsusb output parsing."""

import logging

from usbctl.models import INFO_MAX_LENGTH
from usbctl.usbip_parser import (
    build_vendor_table,
    enrich_devices,
    needs_enrichment,
    parse_device_list,
)

from .conftest import SAMPLE_LIST, SAMPLE_LSUSB


def test_two_devices_with_description():
    output = " - busid 1-1 (1234:5678)\n   Foo Corp Widget\n - busid 1-2 (abcd:ef01)\n"
    devices = parse_device_list(output, is_bound=lambda busid: False)
    assert [d.model_dump() for d in devices] == [
        {"busid": "1-1", "info": "Foo Corp Widget", "bound": False},
        {"busid": "1-2", "info": "", "bound": False},
    ]


def test_bound_comes_from_predicate():
    devices = parse_device_list(SAMPLE_LIST, is_bound=lambda busid: busid == "1-2")
    assert [(d.busid, d.bound) for d in devices] == [("1-1", False), ("1-2", True)]


def test_predicate_errors_mean_unbound(caplog):
    def broken(busid):
        raise OSError("no udev")

    with caplog.at_level(logging.WARNING):
        devices = parse_device_list(SAMPLE_LIST, is_bound=broken)
    assert [d.bound for d in devices] == [False, False]
    assert "no udev" in caplog.text


def test_continuation_lines_are_joined():
    output = "- busid 2-1 (1111:2222)\n\tVendor : Product\n\t  (1111:2222)\n"
    devices = parse_device_list(output)
    assert devices[0].info == "Vendor : Product (1111:2222)"


def test_continuation_without_record_is_ignored():
    output = "   stray description\n - busid 1-3 (1111:2222)\n   Real one\n"
    devices = parse_device_list(output)
    assert [(d.busid, d.info) for d in devices] == [("1-3", "Real one")]


def test_unindented_lines_are_not_continuations():
    output = " - busid 1-1 (1111:2222)\nusbip: warning: something\n   Widget\n"
    devices = parse_device_list(output)
    assert devices[0].info == "Widget"


def test_info_is_capped_and_cleaned():
    long_line = "   " + "A" * 300
    output = f" - busid 1-1 (1111:2222)\n   Bell\x07 Labs\n{long_line}\n   dropped\n"
    devices = parse_device_list(output)
    assert devices[0].info.startswith("Bell Labs AAA")
    assert len(devices[0].info) == INFO_MAX_LENGTH
    assert "dropped" not in devices[0].info


def test_busid_punctuation_is_stripped():
    devices = parse_device_list("- busid 1-4.1: (1111:2222)\n")
    assert devices[0].busid == "1-4.1"


def test_malformed_busid_is_skipped(caplog):
    output = " - busid ;rm$(x) (1111:2222)\n   Evil\n - busid 1-2 (1111:2222)\n   Good\n"
    with caplog.at_level(logging.WARNING):
        devices = parse_device_list(output)
    assert [(d.busid, d.info) for d in devices] == [("1-2", "Good")]
    assert "malformed busid" in caplog.text


def test_duplicate_busid_is_skipped():
    output = " - busid 1-1 (1111:2222)\n   First\n - busid 1-1 (1111:2222)\n   Second\n"
    devices = parse_device_list(output)
    assert [(d.busid, d.info) for d in devices] == [("1-1", "First")]


def test_device_limit(caplog):
    output = "".join(f" - busid 1-{i} (1111:2222)\n   Device {i}\n" for i in range(1, 41))
    with caplog.at_level(logging.WARNING):
        devices = parse_device_list(output, limit=32)
    assert len(devices) == 32
    assert devices[-1].busid == "1-32"
    assert "ignored 8 more" in caplog.text


def test_garbage_never_raises(caplog):
    assert parse_device_list("") == []
    assert parse_device_list("\x00\xff\n\n   \t\n") == []
    with caplog.at_level(logging.WARNING):
        assert parse_device_list("busid\nbusid -\n") == []
    assert "none could be parsed" in caplog.text


def test_vendor_table():
    table = build_vendor_table(SAMPLE_LSUSB)
    assert table["0bda:8153"] == "Realtek Semiconductor Corp. RTL8153 Gigabit Ethernet Adapter"
    assert table["1d6b:0002"] == "Linux Foundation 2.0 root hub"
    assert build_vendor_table("no ids here\n") == {}


def test_enrichment_replaces_unknown_vendor():
    devices = parse_device_list(SAMPLE_LIST)
    assert needs_enrichment(devices)

    enriched = enrich_devices(devices, build_vendor_table(SAMPLE_LSUSB))
    assert enriched[0].info == "Foo Corp Widget"
    assert enriched[1].info == "Realtek Semiconductor Corp. RTL8153 Gigabit Ethernet Adapter"


def test_enrichment_miss_keeps_info():
    devices = parse_device_list(SAMPLE_LIST)
    enriched = enrich_devices(devices, {})
    assert enriched == devices


def test_no_enrichment_needed():
    devices = parse_device_list(" - busid 1-1 (1234:5678)\n   Foo Corp Widget\n")
    assert not needs_enrichment(devices)
