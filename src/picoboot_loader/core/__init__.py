"""
Core module for picoboot-loader.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Address and size parsing (parsing.py)
- Result objects (results.py)
- Load/erase/reboot/info workflows (actions.py)

The CLI calls into this module rather than driving the protocol directly.
"""

from .safety import SafetyContext, require_write_permission, WritePermissionError
from .parsing import parse_address, parse_size
from .results import OperationResult
from .actions import (
    inspect_uf2,
    flash_uf2,
    erase_region,
    reboot_device,
    device_info,
    wait_for_bootsel,
)

__all__ = [
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    # Parsing
    "parse_address",
    "parse_size",
    # Results
    "OperationResult",
    # Actions
    "inspect_uf2",
    "flash_uf2",
    "erase_region",
    "reboot_device",
    "device_info",
    "wait_for_bootsel",
]
