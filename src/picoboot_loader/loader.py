"""
UF2 firmware loader on top of the PICOBOOT driver.

Equivalent of `picotool load -x` for a single UF2 image: every block is
written to its target address, each touched flash sector is erased exactly
once before its first write, and the device is rebooted with the command
matching its family.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set, Tuple

from picoboot_loader.devices import FamilyConfig, default_filters, detect_family
from picoboot_loader.protocol.picoboot import (
    DEFAULT_REBOOT_DELAY_MS,
    ExclusiveMode,
    PicobootDevice,
    ProtocolError,
)
from picoboot_loader.uf2 import ImageFormatError, Uf2Block, block_count, iter_blocks

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


def _sectors_touched(block: Uf2Block, sector_size: int) -> range:
    """Sector indices covered by a block's payload (its start sector if empty)."""
    first = block.address // sector_size
    last = (block.address + max(block.size, 1) - 1) // sector_size
    return range(first, last + 1)


@dataclass
class LoadReport:
    """What a completed load did."""
    blocks_written: int
    sectors_erased: int
    bytes_written: int
    family: Optional[str] = None
    rebooted: bool = False


class FirmwareLoader:
    """
    Flashes UF2 images through a PicobootDevice.

    Example:
        loader = FirmwareLoader(PicobootDevice(), auto_connect=True)
        report = loader.load(Path("blink.uf2").read_bytes())
    """

    def __init__(
        self,
        device: PicobootDevice,
        auto_connect: bool = False,
        filters: Optional[Iterable[Tuple[int, int]]] = None,
        reboot_delay_ms: int = DEFAULT_REBOOT_DELAY_MS,
    ):
        """
        Initialize loader.

        Args:
            device: Driver to flash through
            auto_connect: Connect (and claim exclusive access, exit XIP) when
                load() is called without a session
            filters: USB filters for auto_connect (default: all known families)
            reboot_delay_ms: Delay passed to the reboot command
        """
        self.device = device
        self.auto_connect = auto_connect
        self.filters = list(filters) if filters is not None else default_filters()
        self.reboot_delay_ms = reboot_delay_ms

    def _prepare_session(self) -> bool:
        if self.device.connected():
            return True
        if not self.auto_connect:
            logger.warning("No device connected, nothing loaded")
            return False

        self.device.connect(self.filters)
        self.device.exclusive(ExclusiveMode.EXCLUSIVE_AND_EJECT)
        # Once per session is enough; the bootrom keeps XIP disabled afterwards
        self.device.exit_xip()
        return True

    def load(
        self,
        image: bytes,
        progress_cb: Optional[ProgressCallback] = None,
        reboot: bool = True,
        strict: bool = False,
    ) -> Optional[LoadReport]:
        """
        Flash a UF2 image.

        Args:
            image: Raw UF2 file bytes
            progress_cb: Called with the completed fraction (0 < f <= 1.0)
                after every block; the last call reports exactly 1.0
            reboot: Reboot the device into the new firmware when done
            strict: Reject blocks with bad UF2 magic words

        Returns:
            LoadReport, or None if no session exists and auto_connect is off

        Raises:
            ImageFormatError: If the image is malformed (nothing is sent)
            ProtocolError: If any command fails or the device disappears
            UnknownDeviceError: If the device family cannot be determined
        """
        count = block_count(image)
        self._validate(image, strict)

        if not self._prepare_session():
            return None

        erased_sectors: Set[int] = set()
        bytes_written = 0
        sector_size = self.device.sector_size

        logger.info(f"Loading {count} UF2 blocks")

        for block in iter_blocks(image, strict=strict):
            if not self.device.connected():
                raise ProtocolError(
                    f"Device disconnected before block {block.index}/{count}"
                )

            for sector in _sectors_touched(block, sector_size):
                if sector not in erased_sectors:
                    self.device.flash_erase_sector(sector * sector_size)
                    erased_sectors.add(sector)

            if block.size:
                self.device.flash_write(block.address, block.size, block.payload)
                bytes_written += block.size

            if progress_cb is not None:
                progress_cb((block.index + 1) / count)

        logger.info(
            f"Wrote {bytes_written} bytes in {count} blocks, "
            f"erased {len(erased_sectors)} sectors"
        )

        report = LoadReport(
            blocks_written=count,
            sectors_erased=len(erased_sectors),
            bytes_written=bytes_written,
        )

        if reboot:
            config = self._reboot()
            report.family = config.name
            report.rebooted = True

        return report

    def _validate(self, image: bytes, strict: bool) -> None:
        """Reject blocks the driver cannot write, before the first erase."""
        page_size = self.device.page_size
        for block in iter_blocks(image, strict=strict):
            if block.address % page_size:
                raise ImageFormatError(
                    f"Block {block.index}: address {block.address:#010x} is not "
                    f"{page_size}-byte aligned"
                )
            if block.size > page_size:
                raise ImageFormatError(
                    f"Block {block.index}: payload size {block.size} exceeds one "
                    f"{page_size}-byte page"
                )

    def _reboot(self) -> FamilyConfig:
        """Issue the reboot command matching the connected device's family."""
        info = self.device.info()
        if info is None:
            raise ProtocolError("Device disconnected before reboot")

        config = detect_family(info.product)
        logger.info(f"Detected {config.name} from '{info.product}', rebooting")
        config.reboot(self.device, delay_ms=self.reboot_delay_ms)
        return config
