"""
picoboot-loader - Flash UF2 firmware onto RP2040/RP2350 boards over PICOBOOT

Host-side PICOBOOT driver plus a UF2 loader with per-sector erase tracking
and family-aware reboot.
"""

__version__ = "0.1.0"

from picoboot_loader.protocol import (
    PicobootDevice,
    ExclusiveMode,
    PicobootError,
    DeviceConnectionError,
    ProtocolError,
)
from picoboot_loader.uf2 import ImageFormatError
from picoboot_loader.devices import UnknownDeviceError, DeviceFamily
from picoboot_loader.loader import FirmwareLoader, LoadReport

__all__ = [
    "PicobootDevice",
    "ExclusiveMode",
    "PicobootError",
    "DeviceConnectionError",
    "ProtocolError",
    "ImageFormatError",
    "UnknownDeviceError",
    "DeviceFamily",
    "FirmwareLoader",
    "LoadReport",
    "__version__",
]
