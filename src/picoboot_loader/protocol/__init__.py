"""Device protocol layer - PICOBOOT over USB and serial BOOTSEL entry."""

from .usb_transport import (
    DeviceInfo,
    TransferResult,
    TransportError,
    UsbHandle,
    find_devices,
    open_device,
    describe_device,
)
from .picoboot import (
    PicobootDevice,
    PicobootCommand,
    ExclusiveMode,
    PicobootError,
    DeviceConnectionError,
    ProtocolError,
    build_command_packet,
    PICOBOOT_MAGIC,
    PACKET_SIZE,
    SECTOR_SIZE,
    PAGE_SIZE,
    DEFAULT_REBOOT_DELAY_MS,
)
from .bootsel_touch import (
    BootselTouchError,
    enter_bootsel,
    list_pico_ports,
)

__all__ = [
    # Transport
    "DeviceInfo",
    "TransferResult",
    "TransportError",
    "UsbHandle",
    "find_devices",
    "open_device",
    "describe_device",
    # PICOBOOT
    "PicobootDevice",
    "PicobootCommand",
    "ExclusiveMode",
    "PicobootError",
    "DeviceConnectionError",
    "ProtocolError",
    "build_command_packet",
    "PICOBOOT_MAGIC",
    "PACKET_SIZE",
    "SECTOR_SIZE",
    "PAGE_SIZE",
    "DEFAULT_REBOOT_DELAY_MS",
    # Serial BOOTSEL entry
    "BootselTouchError",
    "enter_bootsel",
    "list_pico_ports",
]
