"""
Device family registry for RP2 microcontrollers.

Provides a unified layer for family detection, USB filters and reboot paths.
"""

from .registry import (
    DeviceFamily,
    FamilyConfig,
    UnknownDeviceError,
    register_family,
    list_families,
    get_family,
    detect_family,
    default_filters,
)

__all__ = [
    "DeviceFamily",
    "FamilyConfig",
    "UnknownDeviceError",
    "register_family",
    "list_families",
    "get_family",
    "detect_family",
    "default_filters",
]
