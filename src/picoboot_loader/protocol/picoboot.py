"""
PICOBOOT Protocol Driver

Implements the host side of the RP2040/RP2350 PICOBOOT vendor interface
exposed in BOOTSEL mode.

References:
- RP2040 datasheet, section 2.8.5 (USB PICOBOOT interface)
- RP2350 datasheet, section 5.6 (USB PICOBOOT interface)

Every command is a 32-byte little-endian packet:

    [ magic (4) | token (4) | cmd_id (1) | cmd_size (1) | reserved (2) |
      transfer_length (4) | args (16) ]

followed by an optional data phase on bulk OUT and a status reply on bulk IN.
"""

import logging
import struct
import threading
from enum import IntEnum
from typing import Callable, Iterable, Optional

from .usb_transport import (
    DeviceFilter,
    DeviceInfo,
    TransferResult,
    TransportError,
    UsbHandle,
    open_device,
)

logger = logging.getLogger(__name__)

# Protocol constants
PICOBOOT_MAGIC = 0x431FD10B
PACKET_SIZE = 32
ARGS_OFFSET = 0x10
MAX_ARGS_SIZE = PACKET_SIZE - ARGS_OFFSET
HEADER_STRUCT = "<IIBBxxI"
TOKEN_MASK = 0xFFFFFFFF

# Endpoints
ENDPOINT_OUT = 0x03
ENDPOINT_IN = 0x84
STATUS_LENGTH = 64

# Flash geometry
SECTOR_SIZE = 4096
PAGE_SIZE = 256

# Delay captured from picotool traffic; the bootrom ignores a zero delay
DEFAULT_REBOOT_DELAY_MS = 0x5631

RP2_VENDOR_ID = 0x2E8A
RP2040_PRODUCT_ID = 0x0003
RP2350_PRODUCT_ID = 0x000F


class PicobootCommand(IntEnum):
    """PICOBOOT command IDs (only the subset used by the loader)."""
    EXCLUSIVE_ACCESS = 0x01
    REBOOT = 0x02
    FLASH_ERASE = 0x03
    WRITE = 0x05
    EXIT_XIP = 0x06
    REBOOT2 = 0x0A


class ExclusiveMode(IntEnum):
    """Argument for EXCLUSIVE_ACCESS."""
    NOT_EXCLUSIVE = 0        # Release the claim, mass storage works again
    EXCLUSIVE = 1            # Mass storage stays mounted but writes fail
    EXCLUSIVE_AND_EJECT = 2  # Mass storage is ejected from the host


class PicobootError(Exception):
    """Base exception for PICOBOOT operations"""
    pass


class DeviceConnectionError(PicobootError, ConnectionError):
    """No device could be selected, opened or claimed"""
    pass


class ProtocolError(PicobootError):
    """A command was not acknowledged or the transport failed mid-command"""
    pass


def build_command_packet(
    token: int,
    cmd_id: int,
    args: bytes = b"",
    transfer_length: int = 0,
    cmd_size: Optional[int] = None,
) -> bytes:
    """
    Build a 32-byte PICOBOOT command packet.

    Args:
        token: Request token echoed by the device
        cmd_id: Command ID (see PicobootCommand)
        args: Command-specific argument bytes (max 16), zero padded
        transfer_length: Number of bytes in the data phase (0 if none)
        cmd_size: Value for the command size field; defaults to len(args)

    Returns:
        Packet bytes, always PACKET_SIZE long
    """
    if len(args) > MAX_ARGS_SIZE:
        raise ValueError(f"Command args too long: {len(args)} bytes (max {MAX_ARGS_SIZE})")
    if cmd_size is None:
        cmd_size = len(args)

    header = struct.pack(
        HEADER_STRUCT,
        PICOBOOT_MAGIC,
        token & TOKEN_MASK,
        cmd_id,
        cmd_size,
        transfer_length,
    )
    return header + args.ljust(MAX_ARGS_SIZE, b"\x00")


def _check_u32(name: str, value: int) -> None:
    if not 0 <= value <= TOKEN_MASK:
        raise ValueError(f"{name} out of 32-bit range: {value:#x}")


class PicobootDevice:
    """
    One PICOBOOT session with a device in BOOTSEL mode.

    Operations that need a session silently do nothing while disconnected;
    only connect() may fail in that state.

    Example:
        device = PicobootDevice()
        device.connect([(0x2E8A, 0x0003)])
        device.exclusive(ExclusiveMode.EXCLUSIVE_AND_EJECT)
        device.exit_xip()
        device.flash_erase_sector(0x10000000)
        device.flash_write(0x10000000, len(data), data)
        device.reboot_rp2040()
        device.disconnect()
    """

    sector_size = SECTOR_SIZE
    page_size = PAGE_SIZE

    def __init__(
        self,
        opener: Callable[[Iterable[DeviceFilter]], Optional[UsbHandle]] = open_device,
    ):
        """
        Initialize driver.

        Args:
            opener: Callable returning an opened handle for a filter list,
                or None if no device matches
        """
        self._opener = opener
        self.handle: Optional[UsbHandle] = None
        self.token = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self, filters: Iterable[DeviceFilter]) -> None:
        """
        Select, open and claim a device matching any of the filters.

        Args:
            filters: Iterable of (vendor_id, product_id) pairs

        Raises:
            DeviceConnectionError: If no device is selected or it cannot be claimed
        """
        filters = list(filters)
        if self.handle is not None:
            self.disconnect()

        try:
            handle = self._opener(filters)
        except TransportError as e:
            raise DeviceConnectionError(f"Cannot open BOOTSEL device: {e}") from e

        if handle is None:
            wanted = ", ".join(f"{vid:04X}:{pid:04X}" for vid, pid in filters)
            raise DeviceConnectionError(f"No BOOTSEL device found matching {wanted}")

        self.handle = handle
        self.token = 0
        logger.info(f"Connected to {handle.info()}")

    def disconnect(self) -> None:
        """Close the session. Does nothing if not connected."""
        if self.handle is None:
            return
        handle, self.handle = self.handle, None
        handle.close()
        logger.info("Disconnected")

    def connected(self) -> bool:
        return self.handle is not None

    def info(self) -> Optional[DeviceInfo]:
        """Return descriptor information for the connected device."""
        if self.handle is None:
            return None
        return self.handle.info()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _next_token(self) -> int:
        token = self.token
        self.token = (self.token + 1) & TOKEN_MASK
        return token

    def _drop_session(self) -> None:
        handle, self.handle = self.handle, None
        if handle is not None:
            handle.close()

    def _check(self, result: TransferResult, what: str) -> None:
        if not result.ok:
            raise ProtocolError(f"{what} failed: transfer status '{result.status}'")

    def _transact(
        self,
        command: PicobootCommand,
        args: bytes = b"",
        payload: bytes = b"",
        cmd_size: Optional[int] = None,
    ) -> None:
        """
        Send one command (plus optional data phase) and wait for its status.

        Raises:
            ProtocolError: On a non-ok transfer status or a transport failure
        """
        with self._lock:
            if self.handle is None:
                return

            packet = build_command_packet(
                self._next_token(),
                command,
                args,
                transfer_length=len(payload),
                cmd_size=cmd_size,
            )
            name = command.name

            try:
                self._check(self.handle.transfer_out(ENDPOINT_OUT, packet), f"{name} command")
                if payload:
                    self._check(self.handle.transfer_out(ENDPOINT_OUT, payload), f"{name} data")
                self._check(self.handle.transfer_in(ENDPOINT_IN, STATUS_LENGTH), f"{name} status")
            except TransportError as e:
                logger.error(f"Transport failure during {name}, dropping session: {e}")
                self._drop_session()
                raise ProtocolError(f"{name} failed: {e}") from e

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def exclusive(self, mode: ExclusiveMode) -> None:
        """Claim or release exclusive access to the BOOTSEL interface."""
        mode = ExclusiveMode(mode)
        self._transact(PicobootCommand.EXCLUSIVE_ACCESS, struct.pack("<B", mode))
        if self.handle is not None:
            logger.debug(f"Exclusive access: {mode.name}")

    def exit_xip(self) -> None:
        """Leave execute-in-place mode so flash can be erased and written."""
        self._transact(PicobootCommand.EXIT_XIP)

    def flash_erase(self, address: int, size: int) -> None:
        """
        Erase a contiguous range of flash sectors.

        Args:
            address: Start address, a multiple of sector_size
            size: Byte count, a multiple of sector_size

        Raises:
            ValueError: If address or size is not sector aligned
            ProtocolError: If the device rejects the command
        """
        _check_u32("address", address)
        _check_u32("size", size)
        if address % self.sector_size:
            raise ValueError(f"Erase address {address:#010x} is not {self.sector_size}-byte aligned")
        if size % self.sector_size:
            raise ValueError(f"Erase size {size} is not a multiple of {self.sector_size}")

        self._transact(PicobootCommand.FLASH_ERASE, struct.pack("<II", address, size))
        if self.handle is not None:
            logger.debug(f"Erased {size} bytes at {address:#010x}")

    def flash_erase_sector(self, address: int) -> None:
        """Erase the single sector containing `address`."""
        sector_address = (address // self.sector_size) * self.sector_size
        self.flash_erase(sector_address, self.sector_size)

    def flash_write(self, address: int, size: int, payload: bytes) -> None:
        """
        Write a payload to (already erased) flash.

        A trailing partial page is zero filled by the device.

        Args:
            address: Target address, a multiple of page_size
            size: Payload length in bytes
            payload: Data to write

        Raises:
            ValueError: If address is not page aligned or size mismatches payload
            ProtocolError: If the device rejects the command or data
        """
        _check_u32("address", address)
        if address % self.page_size:
            raise ValueError(f"Write address {address:#010x} is not {self.page_size}-byte aligned")
        if size != len(payload):
            raise ValueError(f"Write size {size} does not match payload length {len(payload)}")
        if size == 0:
            raise ValueError("Write payload is empty")

        self._transact(
            PicobootCommand.WRITE,
            struct.pack("<II", address, size),
            payload=bytes(payload),
        )
        if self.handle is not None:
            logger.debug(f"Wrote {size} bytes at {address:#010x}")

    def reboot_rp2040(self, delay_ms: int = DEFAULT_REBOOT_DELAY_MS) -> None:
        """
        Reboot an RP2040 out of BOOTSEL into flash.

        Args:
            delay_ms: Delay before rebooting; must be non-zero
        """
        if delay_ms <= 0:
            raise ValueError("Reboot delay must be non-zero")
        _check_u32("delay_ms", delay_ms)
        # pc=0 and sp=0 select a normal flash boot
        self._transact(PicobootCommand.REBOOT, struct.pack("<III", 0, 0, delay_ms))
        if self.handle is not None:
            logger.info(f"RP2040 reboot scheduled in {delay_ms} ms")

    def reboot_rp2350(self, delay_ms: int = DEFAULT_REBOOT_DELAY_MS) -> None:
        """
        Reboot an RP2350 out of BOOTSEL into flash.

        Uses REBOOT2 with flags=0 (normal boot) and no parameters.

        Args:
            delay_ms: Delay before rebooting; must be non-zero
        """
        if delay_ms <= 0:
            raise ValueError("Reboot delay must be non-zero")
        _check_u32("delay_ms", delay_ms)
        self._transact(
            PicobootCommand.REBOOT2,
            struct.pack("<IIII", 0, delay_ms, 0, 0),
        )
        if self.handle is not None:
            logger.info(f"RP2350 reboot scheduled in {delay_ms} ms")
