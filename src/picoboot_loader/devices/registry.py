"""
Device family registry for RP2 microcontrollers in BOOTSEL mode.

Provides a single source of truth for:
- Family configurations (USB IDs, descriptor product matchers)
- Reboot path selection after flashing
- The default USB filter list used to find BOOTSEL devices

Usage:
    from picoboot_loader.devices import (
        list_families, get_family, detect_family, default_filters
    )

    # Filters for PicobootDevice.connect()
    filters = default_filters()

    # Pick the reboot path from the descriptor product string
    config = detect_family("RP2 Boot")
    config.reboot(device)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from picoboot_loader.protocol.picoboot import (
    PicobootDevice,
    PicobootError,
    RP2_VENDOR_ID,
    RP2040_PRODUCT_ID,
    RP2350_PRODUCT_ID,
)


class DeviceFamily(Enum):
    """Known RP2 families."""
    RP2040 = "rp2040"
    RP2350 = "rp2350"


class UnknownDeviceError(PicobootError):
    """The connected device does not match any registered family"""

    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(
            f"Unrecognized device '{product_name}'; refusing to guess a reboot command"
        )


@dataclass(frozen=True)
class FamilyConfig:
    """
    Configuration for one device family.

    Attributes:
        family: Family enum value
        name: Display name
        product_match: Substring of the USB product string identifying the family
        vendor_id: USB vendor ID in BOOTSEL mode
        product_id: USB product ID in BOOTSEL mode
        reboot: Driver method issuing this family's reboot command
        notes: Free-form notes shown by `devices`
    """
    family: DeviceFamily
    name: str
    product_match: str
    vendor_id: int
    product_id: int
    reboot: Callable[..., None]
    notes: List[str] = field(default_factory=list)

    @property
    def usb_filter(self) -> Tuple[int, int]:
        return (self.vendor_id, self.product_id)

    def matches(self, product_name: str) -> bool:
        return self.product_match in product_name


# ============================================================================
# FAMILY REGISTRY - All known families
# ============================================================================

_FAMILY_REGISTRY: Dict[DeviceFamily, FamilyConfig] = {}


def register_family(config: FamilyConfig) -> None:
    """Register (or replace) a family configuration."""
    _FAMILY_REGISTRY[config.family] = config


def _init_registry() -> None:
    """Initialize the registry with known families."""

    # RP2040 bootrom reports "RP2 Boot". The match is a prefix of the RP2350
    # string too, so detection must try longer matchers first.
    register_family(FamilyConfig(
        family=DeviceFamily.RP2040,
        name="RP2040",
        product_match="RP2",
        vendor_id=RP2_VENDOR_ID,
        product_id=RP2040_PRODUCT_ID,
        reboot=PicobootDevice.reboot_rp2040,
        notes=[
            "Reboots with REBOOT (0x02), pc=0 sp=0",
        ],
    ))

    register_family(FamilyConfig(
        family=DeviceFamily.RP2350,
        name="RP2350",
        product_match="RP2350",
        vendor_id=RP2_VENDOR_ID,
        product_id=RP2350_PRODUCT_ID,
        reboot=PicobootDevice.reboot_rp2350,
        notes=[
            "Reboots with REBOOT2 (0x0A), normal boot flags",
        ],
    ))


_init_registry()


def list_families() -> List[FamilyConfig]:
    """Return all registered families in registration order."""
    return list(_FAMILY_REGISTRY.values())


def get_family(family: DeviceFamily) -> Optional[FamilyConfig]:
    """Look up a family configuration."""
    return _FAMILY_REGISTRY.get(family)


def detect_family(product_name: str) -> FamilyConfig:
    """
    Select a family from the USB product string.

    Matchers are tried from most to least specific (longest first), so
    "RP2350 Boot" resolves to RP2350 even though it also contains "RP2".

    Args:
        product_name: Product string from the device descriptor

    Returns:
        Matching FamilyConfig

    Raises:
        UnknownDeviceError: If no family matches
    """
    candidates = sorted(
        _FAMILY_REGISTRY.values(),
        key=lambda c: len(c.product_match),
        reverse=True,
    )
    for config in candidates:
        if config.matches(product_name or ""):
            return config
    raise UnknownDeviceError(product_name)


def default_filters() -> List[Tuple[int, int]]:
    """USB (vendor_id, product_id) filters matching every registered family."""
    filters: List[Tuple[int, int]] = []
    for config in _FAMILY_REGISTRY.values():
        if config.usb_filter not in filters:
            filters.append(config.usb_filter)
    return filters
