"""
Core workflow actions for picoboot-loader.

Each action opens its own session, runs one operation and returns an
OperationResult. All flash mutations go through the safety context.
"""

import hashlib
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, Optional

from picoboot_loader.devices import UnknownDeviceError, default_filters, detect_family
from picoboot_loader.loader import FirmwareLoader
from picoboot_loader.protocol import (
    DEFAULT_REBOOT_DELAY_MS,
    BootselTouchError,
    ExclusiveMode,
    PicobootDevice,
    PicobootError,
    enter_bootsel,
    find_devices,
)
from picoboot_loader.uf2 import ImageFormatError, summarize_image
from .results import OperationResult
from .safety import SafetyContext, require_write_permission

logger = logging.getLogger(__name__)

BOOTSEL_WAIT_SECONDS = 10.0
BOOTSEL_POLL_SECONDS = 0.25


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records: List[str] = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "picoboot_loader"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def wait_for_bootsel(
    timeout: float = BOOTSEL_WAIT_SECONDS,
    poll: float = BOOTSEL_POLL_SECONDS,
) -> bool:
    """Poll until a BOOTSEL device enumerates. Returns False on timeout."""
    deadline = time.monotonic() + timeout
    filters = default_filters()
    while time.monotonic() < deadline:
        if find_devices(filters):
            return True
        time.sleep(poll)
    return False


def inspect_uf2(image_path: str) -> OperationResult:
    """
    Summarize a UF2 file without touching a device.

    Returns:
        OperationResult with metadata from Uf2Summary.to_dict()
    """
    path = Path(image_path)
    if not path.exists():
        return OperationResult.failure("inspect_uf2", f"Image file not found: {image_path}")

    image = path.read_bytes()
    try:
        summary = summarize_image(image)
    except ImageFormatError as e:
        return OperationResult.failure("inspect_uf2", str(e))

    result = OperationResult.success(
        "inspect_uf2",
        bytes_len=summary.payload_bytes,
        sha256=hashlib.sha256(image).hexdigest(),
    )
    if summary.start_address is not None:
        result.region = f"0x{summary.start_address:08X}-0x{summary.end_address:08X}"
    result.metadata.update(summary.to_dict())
    if summary.bad_magic_blocks:
        result.add_warning(f"{len(summary.bad_magic_blocks)} blocks have bad UF2 magic")
    return result


def flash_uf2(
    image_path: str,
    safety_ctx: SafetyContext,
    device: Optional[PicobootDevice] = None,
    reboot: bool = True,
    reboot_delay_ms: int = DEFAULT_REBOOT_DELAY_MS,
    strict: bool = False,
    touch_port: Optional[str] = None,
    progress_cb: Optional[Callable[[float], None]] = None,
) -> OperationResult:
    """
    Complete load workflow: validate image, connect, erase/write, reboot.

    Args:
        image_path: Path to the UF2 file
        safety_ctx: Safety context for gating
        device: Driver to use (a fresh PicobootDevice by default)
        reboot: Reboot into the new firmware when done
        reboot_delay_ms: Delay passed to the reboot command
        strict: Reject blocks with bad UF2 magic
        touch_port: Serial port to 1200-baud touch into BOOTSEL first
        progress_cb: Optional callback(fraction_done)

    Returns:
        OperationResult with load statistics in metadata

    Raises:
        WritePermissionError: If the safety context denies the write
    """
    path = Path(image_path)
    if not path.exists():
        return OperationResult.failure("flash_uf2", f"Image file not found: {image_path}")

    image = path.read_bytes()
    digest = hashlib.sha256(image).hexdigest()

    with _capture_logs() as logs:
        try:
            summary = summarize_image(image)
        except ImageFormatError as e:
            result = OperationResult.failure("flash_uf2", str(e), sha256=digest)
            result.logs = logs
            return result

        region = f"0x{summary.start_address:08X}-0x{summary.end_address:08X}"
        require_write_permission(
            safety_ctx,
            target_region=region,
            bytes_length=summary.payload_bytes,
        )

        if safety_ctx.dry_run:
            result = OperationResult.success(
                "flash_uf2",
                region=region,
                bytes_len=summary.payload_bytes,
                sha256=digest,
            )
            result.metadata["blocks"] = summary.block_count
            result.metadata["sectors"] = len(summary.sectors)
            result.metadata["dry_run"] = True
            result.add_warning("Dry run - device not touched")
            result.logs = logs
            return result

        if device is None:
            device = PicobootDevice()

        try:
            if touch_port:
                enter_bootsel(touch_port)
                if not wait_for_bootsel():
                    raise PicobootError(f"No BOOTSEL device appeared after touching {touch_port}")

            loader = FirmwareLoader(device, auto_connect=True, reboot_delay_ms=reboot_delay_ms)
            info = None
            try:
                report = loader.load(image, progress_cb=progress_cb, reboot=reboot, strict=strict)
                info = device.info()
                if not reboot and device.connected():
                    device.exclusive(ExclusiveMode.NOT_EXCLUSIVE)
            finally:
                device.disconnect()

            result = OperationResult.success(
                "flash_uf2",
                device=info.product if info else "",
                region=region,
                bytes_len=report.bytes_written,
                sha256=digest,
            )
            result.metadata["blocks"] = report.blocks_written
            result.metadata["sectors_erased"] = report.sectors_erased
            if report.rebooted:
                result.metadata["rebooted"] = report.family
            result.warnings.extend(safety_ctx.warnings)
            result.logs = logs
            return result

        except ImageFormatError as e:
            # Rejected before the first erase; flash is untouched
            logger.error(f"flash_uf2 rejected image: {e}")
            result = OperationResult.failure("flash_uf2", str(e), region=region, sha256=digest)
            result.logs = logs
            return result

        except (PicobootError, UnknownDeviceError, BootselTouchError, ValueError) as e:
            logger.error(f"flash_uf2 failed: {e}")
            result = OperationResult.failure("flash_uf2", str(e), region=region, sha256=digest)
            result.add_warning("Flash contents are now undefined; reload the full image")
            result.logs = logs
            return result


def erase_region(
    address: int,
    size: int,
    safety_ctx: SafetyContext,
    device: Optional[PicobootDevice] = None,
) -> OperationResult:
    """
    Erase a sector-aligned flash range.

    Raises:
        WritePermissionError: If the safety context denies the erase
    """
    region = f"0x{address:08X}-0x{address + size:08X}"

    with _capture_logs() as logs:
        require_write_permission(safety_ctx, target_region=region, bytes_length=size)

        if safety_ctx.dry_run:
            result = OperationResult.success("erase_region", region=region, bytes_len=size)
            result.add_warning("Dry run - device not touched")
            result.logs = logs
            return result

        if device is None:
            device = PicobootDevice()

        try:
            device.connect(default_filters())
            try:
                info = device.info()
                device.exclusive(ExclusiveMode.EXCLUSIVE_AND_EJECT)
                device.exit_xip()
                device.flash_erase(address, size)
                device.exclusive(ExclusiveMode.NOT_EXCLUSIVE)
            finally:
                device.disconnect()
        except (PicobootError, ValueError) as e:
            logger.error(f"erase_region failed: {e}")
            result = OperationResult.failure("erase_region", str(e), region=region)
            result.logs = logs
            return result

        result = OperationResult.success(
            "erase_region",
            device=info.product if info else "",
            region=region,
            bytes_len=size,
        )
        result.logs = logs
        return result


def reboot_device(
    device: Optional[PicobootDevice] = None,
    delay_ms: int = DEFAULT_REBOOT_DELAY_MS,
) -> OperationResult:
    """Reboot a BOOTSEL device into flash using its family's reboot command."""
    if device is None:
        device = PicobootDevice()

    with _capture_logs() as logs:
        try:
            device.connect(default_filters())
            try:
                info = device.info()
                config = detect_family(info.product)
                config.reboot(device, delay_ms=delay_ms)
            finally:
                device.disconnect()
        except (PicobootError, UnknownDeviceError, ValueError) as e:
            logger.error(f"reboot_device failed: {e}")
            result = OperationResult.failure("reboot_device", str(e))
            result.logs = logs
            return result

        result = OperationResult.success("reboot_device", device=info.product)
        result.metadata["family"] = config.name
        result.metadata["delay_ms"] = delay_ms
        result.logs = logs
        return result


def device_info(device: Optional[PicobootDevice] = None) -> OperationResult:
    """Connect, read the device descriptor and disconnect."""
    if device is None:
        device = PicobootDevice()

    with _capture_logs() as logs:
        try:
            device.connect(default_filters())
            try:
                info = device.info()
            finally:
                device.disconnect()
        except PicobootError as e:
            result = OperationResult.failure("device_info", str(e))
            result.logs = logs
            return result

        result = OperationResult.success("device_info", device=info.product)
        result.metadata.update({
            "vendor_id": f"0x{info.vendor_id:04X}",
            "product_id": f"0x{info.product_id:04X}",
            "manufacturer": info.manufacturer,
            "serial_number": info.serial_number,
        })
        try:
            result.metadata["family"] = detect_family(info.product).name
        except UnknownDeviceError as e:
            result.add_warning(str(e))
        result.logs = logs
        return result
