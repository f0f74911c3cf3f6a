"""
PICOBOOT USB Transport Layer

Handles low-level USB communication with RP2040/RP2350 devices in BOOTSEL mode.

This module provides:
- Device enumeration against vendor/product ID filters
- Configuration selection and interface claiming
- Bulk OUT/IN transfers reporting a transfer status
- Descriptor strings for device identification
"""

import errno
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

try:
    import usb.core
    import usb.util
except ImportError:
    raise ImportError("PyUSB required: pip install pyusb")

logger = logging.getLogger(__name__)

PICOBOOT_INTERFACE = 1
PICOBOOT_CONFIGURATION = 1
DEFAULT_TIMEOUT_MS = 5000

# Transfer status values, named after the WebUSB USBTransferStatus strings
STATUS_OK = "ok"
STATUS_STALL = "stall"
STATUS_BABBLE = "babble"

DeviceFilter = Tuple[int, int]


class TransportError(Exception):
    """Raised when a USB transfer cannot be completed at all"""
    pass


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a single bulk transfer."""
    status: str
    data: bytes = b""
    bytes_written: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


@dataclass(frozen=True)
class DeviceInfo:
    """Identification strings and IDs read from the USB device descriptor."""
    vendor_id: int
    product_id: int
    product: str = ""
    manufacturer: str = ""
    serial_number: str = ""
    bus: Optional[int] = None
    address: Optional[int] = None

    def __str__(self) -> str:
        name = self.product or "unknown device"
        return f"{name} ({self.vendor_id:04X}:{self.product_id:04X})"


def _read_string(device: "usb.core.Device", index: int) -> str:
    """Read a descriptor string, returning "" when the device has none."""
    if not index:
        return ""
    try:
        return usb.util.get_string(device, index) or ""
    except (usb.core.USBError, ValueError) as e:
        logger.debug(f"Could not read string descriptor {index}: {e}")
        return ""


def describe_device(device: "usb.core.Device") -> DeviceInfo:
    """Build a DeviceInfo from a pyusb device."""
    return DeviceInfo(
        vendor_id=device.idVendor,
        product_id=device.idProduct,
        product=_read_string(device, device.iProduct),
        manufacturer=_read_string(device, device.iManufacturer),
        serial_number=_read_string(device, device.iSerialNumber),
        bus=getattr(device, "bus", None),
        address=getattr(device, "address", None),
    )


def find_devices(filters: Iterable[DeviceFilter]) -> List["usb.core.Device"]:
    """
    Enumerate attached devices matching any (vendor_id, product_id) pair.

    Args:
        filters: Iterable of (vendor_id, product_id) tuples

    Returns:
        Matching pyusb devices, in enumeration order
    """
    wanted = set(filters)

    def _match(dev) -> bool:
        return (dev.idVendor, dev.idProduct) in wanted

    return list(usb.core.find(find_all=True, custom_match=_match))


class UsbHandle:
    """
    An opened, claimed PICOBOOT interface on one USB device.

    Example:
        handle = open_device([(0x2E8A, 0x0003)])
        handle.transfer_out(0x03, packet)
        result = handle.transfer_in(0x84, 64)
        handle.close()
    """

    def __init__(
        self,
        device: "usb.core.Device",
        interface: int = PICOBOOT_INTERFACE,
        timeout: int = DEFAULT_TIMEOUT_MS,
    ):
        """
        Initialize handle.

        Args:
            device: pyusb device to drive
            interface: Interface number of the PICOBOOT vendor interface
            timeout: Per-transfer timeout in milliseconds
        """
        self.device = device
        self.interface = interface
        self.timeout = timeout
        self._claimed = False

    def open(self) -> None:
        """
        Select a configuration if none is active and claim the interface.

        Raises:
            TransportError: If the device cannot be configured or claimed
        """
        try:
            try:
                self.device.get_active_configuration()
            except usb.core.USBError:
                logger.debug(f"No active configuration, selecting {PICOBOOT_CONFIGURATION}")
                self.device.set_configuration(PICOBOOT_CONFIGURATION)

            try:
                if self.device.is_kernel_driver_active(self.interface):
                    logger.debug(f"Detaching kernel driver from interface {self.interface}")
                    self.device.detach_kernel_driver(self.interface)
            except NotImplementedError:
                # Not available on every backend (e.g. Windows)
                pass

            usb.util.claim_interface(self.device, self.interface)
            self._claimed = True
        except usb.core.USBError as e:
            raise TransportError(f"Cannot claim interface {self.interface}: {e}")

        logger.debug(
            f"Claimed interface {self.interface} on "
            f"{self.device.idVendor:04X}:{self.device.idProduct:04X}"
        )

    def close(self) -> None:
        """Release the interface and free the device."""
        try:
            if self._claimed:
                usb.util.release_interface(self.device, self.interface)
        except usb.core.USBError as e:
            # Releasing an unplugged device fails; the handle is gone either way
            logger.debug(f"Release failed: {e}")
        finally:
            self._claimed = False
            usb.util.dispose_resources(self.device)

    def transfer_out(self, endpoint: int, data: bytes) -> TransferResult:
        """
        Send a bulk OUT transfer.

        Raises:
            TransportError: If the transfer fails for any reason other than a stall
        """
        try:
            written = self.device.write(endpoint, data, self.timeout)
        except usb.core.USBError as e:
            if e.errno == errno.EPIPE:
                return TransferResult(STATUS_STALL)
            raise TransportError(f"Bulk OUT on 0x{endpoint:02X} failed: {e}")
        logger.debug(f">>> {bytes(data[:32]).hex().upper()}" + ("..." if len(data) > 32 else ""))
        return TransferResult(STATUS_OK, bytes_written=written)

    def transfer_in(self, endpoint: int, length: int) -> TransferResult:
        """
        Read a bulk IN transfer of up to `length` bytes.

        Raises:
            TransportError: If the transfer fails for any reason other than a
                stall or overflow
        """
        try:
            data = bytes(self.device.read(endpoint, length, self.timeout))
        except usb.core.USBError as e:
            if e.errno == errno.EPIPE:
                return TransferResult(STATUS_STALL)
            if e.errno == errno.EOVERFLOW:
                return TransferResult(STATUS_BABBLE)
            raise TransportError(f"Bulk IN on 0x{endpoint:02X} failed: {e}")
        logger.debug(f"<<< {data.hex().upper()}")
        return TransferResult(STATUS_OK, data=data)

    def info(self) -> DeviceInfo:
        return describe_device(self.device)


def open_device(
    filters: Iterable[DeviceFilter],
    interface: int = PICOBOOT_INTERFACE,
    timeout: int = DEFAULT_TIMEOUT_MS,
) -> Optional[UsbHandle]:
    """
    Select, open and claim the first device matching the filters.

    Finding nothing is a normal outcome and returns None.

    Returns:
        An opened UsbHandle, or None if no device matches

    Raises:
        TransportError: If a matching device cannot be opened or claimed
    """
    devices = find_devices(filters)
    if not devices:
        return None
    if len(devices) > 1:
        logger.warning(f"{len(devices)} BOOTSEL devices attached, using the first one")

    handle = UsbHandle(devices[0], interface=interface, timeout=timeout)
    handle.open()
    return handle
