"""Shared fixtures: a scripted stand-in for an opened PICOBOOT USB handle."""

import struct
from collections import deque
from typing import Deque, List, Optional

import pytest

from picoboot_loader.protocol.picoboot import PicobootCommand, PicobootDevice
from picoboot_loader.protocol.usb_transport import (
    DeviceInfo,
    TransferResult,
    TransportError,
)
from picoboot_loader.uf2 import pack_block


class FakeHandle:
    """Records bulk transfers and replays scripted IN statuses."""

    def __init__(self, product: str = "RP2 Boot", product_id: int = 0x0003):
        self.product = product
        self.product_id = product_id
        self.out: List[bytes] = []
        self.in_statuses: Deque[str] = deque()
        self.fail_on_transfer: Optional[int] = None
        self.transfers = 0
        self.closed = False

    def _tick(self) -> None:
        self.transfers += 1
        if self.fail_on_transfer is not None and self.transfers >= self.fail_on_transfer:
            raise TransportError("device unplugged")

    def transfer_out(self, endpoint: int, data: bytes) -> TransferResult:
        self._tick()
        assert endpoint == 0x03
        self.out.append(bytes(data))
        return TransferResult("ok", bytes_written=len(data))

    def transfer_in(self, endpoint: int, length: int) -> TransferResult:
        self._tick()
        assert endpoint == 0x84
        assert length == 64
        status = self.in_statuses.popleft() if self.in_statuses else "ok"
        return TransferResult(status)

    def info(self) -> DeviceInfo:
        return DeviceInfo(
            vendor_id=0x2E8A,
            product_id=self.product_id,
            product=self.product,
            manufacturer="Raspberry Pi",
        )

    def close(self) -> None:
        self.closed = True

    def commands(self) -> List[dict]:
        """Decode the OUT stream into command dicts (payloads attached to writes)."""
        decoded = []
        stream = iter(self.out)
        for packet in stream:
            magic, token, cmd_id, cmd_size, transfer_length = struct.unpack_from("<IIBBxxI", packet)
            cmd = {
                "magic": magic,
                "token": token,
                "cmd": PicobootCommand(cmd_id),
                "cmd_size": cmd_size,
                "transfer_length": transfer_length,
                "args": packet[16:32],
                "raw": packet,
                "payload": b"",
            }
            if transfer_length:
                cmd["payload"] = next(stream)
            decoded.append(cmd)
        return decoded

    def erases(self) -> List[tuple]:
        return [
            struct.unpack_from("<II", c["args"])
            for c in self.commands()
            if c["cmd"] is PicobootCommand.FLASH_ERASE
        ]

    def writes(self) -> List[tuple]:
        return [
            struct.unpack_from("<II", c["args"]) + (c["payload"],)
            for c in self.commands()
            if c["cmd"] is PicobootCommand.WRITE
        ]


@pytest.fixture
def fake_handle() -> FakeHandle:
    return FakeHandle()


@pytest.fixture
def opener_calls() -> list:
    return []


@pytest.fixture
def device(fake_handle, opener_calls) -> PicobootDevice:
    """A PicobootDevice already connected to fake_handle."""
    def _opener(filters):
        opener_calls.append(list(filters))
        return fake_handle

    dev = PicobootDevice(opener=_opener)
    dev.connect([(0x2E8A, 0x0003)])
    return dev


def make_image(*blocks) -> bytes:
    """Build a UF2 image from (address, payload) pairs."""
    total = len(blocks)
    return b"".join(
        pack_block(address, payload, block_no=i, num_blocks=total)
        for i, (address, payload) in enumerate(blocks)
    )


@pytest.fixture
def image_builder():
    return make_image
