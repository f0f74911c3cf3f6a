"""Tests for the UF2 firmware loader: erase deduplication, ordering and reboot selection."""

import struct

import pytest

from picoboot_loader.devices import UnknownDeviceError
from picoboot_loader.loader import FirmwareLoader
from picoboot_loader.protocol.picoboot import (
    ExclusiveMode,
    PicobootCommand,
    PicobootDevice,
    ProtocolError,
)
from picoboot_loader.uf2 import ImageFormatError


def _sector(address: int) -> int:
    return address // 4096


def _assert_erased_before_written(fake_handle) -> None:
    """Every sector a write covers must already have been erased."""
    erased_so_far = set()
    for cmd in fake_handle.commands():
        address, size = struct.unpack_from("<II", cmd["args"])
        if cmd["cmd"] is PicobootCommand.FLASH_ERASE:
            erased_so_far.update(range(_sector(address), _sector(address + size - 1) + 1))
        elif cmd["cmd"] is PicobootCommand.WRITE:
            covered = set(range(_sector(address), _sector(address + size - 1) + 1))
            assert covered <= erased_so_far, f"write at {address:#x} hit unerased sectors"


class TestEraseAndWrite:
    """Erase/write sequencing."""

    def test_single_block_scenario(self, device, fake_handle, image_builder):
        image = image_builder((0x10000000, b"\xDE\xAD\xBE\xEF"))
        report = FirmwareLoader(device).load(image, reboot=False)

        assert fake_handle.erases() == [(0x10000000, 4096)]
        assert fake_handle.writes() == [(0x10000000, 4, b"\xDE\xAD\xBE\xEF")]
        assert report.blocks_written == 1
        assert report.sectors_erased == 1
        assert report.bytes_written == 4

    def test_two_blocks_in_same_sector_erase_once(self, device, fake_handle, image_builder):
        image = image_builder(
            (0x10000000, b"a" * 256),
            (0x10000100, b"b" * 256),
        )
        FirmwareLoader(device).load(image, reboot=False)

        assert len(fake_handle.erases()) == 1
        assert [w[0] for w in fake_handle.writes()] == [0x10000000, 0x10000100]

    def test_unordered_blocks_erase_each_sector_once_before_writes(
        self, device, fake_handle, image_builder
    ):
        addresses = [0x10001100, 0x10000000, 0x10003000, 0x10001000, 0x10000F00, 0x10003F00]
        image = image_builder(*[(a, bytes([i]) * 256) for i, a in enumerate(addresses)])
        FirmwareLoader(device).load(image, reboot=False)

        erased = [_sector(a) for a, _ in fake_handle.erases()]
        assert sorted(erased) == sorted({_sector(a) for a in addresses})
        assert len(erased) == len(set(erased))

        _assert_erased_before_written(fake_handle)

    def test_each_load_gets_a_fresh_erased_set(self, device, fake_handle, image_builder):
        image = image_builder((0x10000000, b"a" * 256))
        loader = FirmwareLoader(device)
        loader.load(image, reboot=False)
        loader.load(image, reboot=False)
        assert len(fake_handle.erases()) == 2

    def test_progress_reports_fractions_ending_at_one(self, device, image_builder):
        image = image_builder(*[(0x10000000 + i * 256, b"x" * 256) for i in range(4)])
        seen = []
        FirmwareLoader(device).load(image, progress_cb=seen.append, reboot=False)
        assert seen == [0.25, 0.5, 0.75, 1.0]

    def test_bad_image_length_sends_nothing(self, device, fake_handle):
        with pytest.raises(ImageFormatError):
            FirmwareLoader(device).load(b"\x00" * 513)
        assert fake_handle.out == []

    def test_strict_mode_rejects_before_erasing(self, device, fake_handle, image_builder):
        image = bytearray(image_builder((0x10000000, b"a" * 256), (0x10000100, b"b" * 256)))
        image[512:516] = b"JUNK"
        with pytest.raises(ImageFormatError):
            FirmwareLoader(device).load(bytes(image), strict=True)
        assert fake_handle.out == []

    def test_block_spanning_two_sectors_is_rejected_before_erasing(
        self, device, fake_handle, image_builder
    ):
        image = image_builder(
            (0x10000F00, b"A" * 476),
            (0x10001100, b"B" * 256),
        )
        with pytest.raises(ImageFormatError):
            FirmwareLoader(device).load(image, reboot=False)
        assert fake_handle.out == []

    def test_misaligned_block_rejected_before_anything_is_sent(
        self, device, fake_handle, image_builder
    ):
        image = image_builder(
            (0x10000000, b"a" * 256),
            (0x10002080, b"b" * 16),
        )
        with pytest.raises(ImageFormatError):
            FirmwareLoader(device).load(image, reboot=False)
        assert fake_handle.out == []

    def test_last_page_of_sector_and_next_sector(self, device, fake_handle, image_builder):
        image = image_builder(
            (0x10001000, b"b" * 256),
            (0x10000F00, b"a" * 256),
            (0x10001F00, b"c" * 256),
        )
        FirmwareLoader(device).load(image, reboot=False)

        assert fake_handle.erases() == [(0x10001000, 4096), (0x10000000, 4096)]
        _assert_erased_before_written(fake_handle)

    def test_failed_write_aborts_load(self, device, fake_handle, image_builder):
        image = image_builder(
            (0x10000000, b"a" * 256),
            (0x10000100, b"b" * 256),
        )
        # erase ok, first write rejected
        fake_handle.in_statuses.extend(["ok", "stall"])
        with pytest.raises(ProtocolError):
            FirmwareLoader(device).load(image)
        assert len(fake_handle.writes()) == 1


class TestReboot:
    """Reboot path selection from the product string."""

    def _reboots(self, fake_handle):
        return [
            c["cmd"] for c in fake_handle.commands()
            if c["cmd"] in (PicobootCommand.REBOOT, PicobootCommand.REBOOT2)
        ]

    def test_rp2040_product_selects_rp2040_reboot(self, device, fake_handle, image_builder):
        fake_handle.product = "RP2040 Boot"
        report = FirmwareLoader(device).load(image_builder((0x10000000, b"a" * 4)))
        assert self._reboots(fake_handle) == [PicobootCommand.REBOOT]
        assert report.family == "RP2040"
        assert report.rebooted

    def test_rp2_boot_selects_rp2040_reboot(self, device, fake_handle, image_builder):
        fake_handle.product = "RP2 Boot"
        FirmwareLoader(device).load(image_builder((0x10000000, b"a" * 4)))
        assert self._reboots(fake_handle) == [PicobootCommand.REBOOT]

    def test_rp2350_product_selects_rp2350_reboot(self, device, fake_handle, image_builder):
        fake_handle.product = "RP2350 Boot"
        report = FirmwareLoader(device).load(image_builder((0x10000000, b"a" * 4)))
        assert self._reboots(fake_handle) == [PicobootCommand.REBOOT2]
        assert report.family == "RP2350"

    def test_unknown_product_raises_without_reboot(self, device, fake_handle, image_builder):
        fake_handle.product = "ESP32"
        with pytest.raises(UnknownDeviceError):
            FirmwareLoader(device).load(image_builder((0x10000000, b"a" * 4)))
        assert self._reboots(fake_handle) == []

    def test_reboot_delay_is_forwarded(self, device, fake_handle, image_builder):
        FirmwareLoader(device, reboot_delay_ms=250).load(image_builder((0x10000000, b"a" * 4)))
        reboot = fake_handle.commands()[-1]
        assert int.from_bytes(reboot["args"][8:12], "little") == 250


class TestSessionHandling:
    """Connect modes and disconnection."""

    def test_without_session_load_is_noop(self, image_builder):
        dev = PicobootDevice(opener=lambda filters: None)
        assert FirmwareLoader(dev).load(image_builder((0x10000000, b"a" * 4))) is None

    def test_auto_connect_claims_and_exits_xip_once(self, fake_handle, image_builder):
        filters_seen = []

        def _opener(filters):
            filters_seen.append(list(filters))
            return fake_handle

        dev = PicobootDevice(opener=_opener)
        image = image_builder(
            (0x10000000, b"a" * 256),
            (0x10001000, b"b" * 256),
        )
        FirmwareLoader(dev, auto_connect=True).load(image, reboot=False)

        commands = [c["cmd"] for c in fake_handle.commands()]
        assert commands[:2] == [PicobootCommand.EXCLUSIVE_ACCESS, PicobootCommand.EXIT_XIP]
        assert commands.count(PicobootCommand.EXIT_XIP) == 1
        assert commands.count(PicobootCommand.EXCLUSIVE_ACCESS) == 1
        assert fake_handle.commands()[0]["args"][0] == ExclusiveMode.EXCLUSIVE_AND_EJECT
        assert filters_seen == [[(0x2E8A, 0x0003), (0x2E8A, 0x000F)]]

    def test_disconnect_mid_load_raises_and_reports_disconnected(
        self, device, fake_handle, image_builder
    ):
        image = image_builder(*[(0x10000000 + i * 256, b"x" * 256) for i in range(4)])
        seen = []

        def _progress(fraction):
            seen.append(fraction)
            if fraction >= 0.5:
                device.disconnect()

        with pytest.raises(ProtocolError):
            FirmwareLoader(device).load(image, progress_cb=_progress)
        assert not device.connected()
        assert seen == [0.25, 0.5]

    def test_unplug_mid_load_raises_protocol_error(self, device, fake_handle, image_builder):
        image = image_builder(*[(0x10000000 + i * 256, b"x" * 256) for i in range(4)])
        # erase (2 transfers) + first write (3 transfers) succeed, then the device vanishes
        fake_handle.fail_on_transfer = fake_handle.transfers + 6
        with pytest.raises(ProtocolError):
            FirmwareLoader(device).load(image)
        assert not device.connected()
