"""
Write gating for flash-mutating operations.

Erasing or writing flash leaves the device unbootable until a full image is
loaded again, so every mutating action goes through require_write_permission.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "FLASH"


class WritePermissionError(Exception):
    """
    Raised when a flash operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why the write was denied
        details: Additional context (image, region, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Everything needed to decide whether a flash mutation may proceed.

    Attributes:
        write_enabled: Whether --write was given
        confirmation_token: For non-interactive use, must match CONFIRMATION_TOKEN
        interactive: Whether the user can be prompted
        dry_run: Parse and plan only, never touch the device
        warnings: Warnings accumulated during the operation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    dry_run: bool = False
    warnings: List[str] = field(default_factory=list)

    # The CLI installs typer prompts here
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)


def require_write_permission(
    ctx: SafetyContext,
    target_region: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules, in order:
    1. Dry runs are always allowed (nothing is sent)
    2. Writes must be explicitly enabled
    3. A confirmation token, if given, must match exactly
    4. Otherwise the user is prompted interactively

    Raises:
        WritePermissionError: If the write is not permitted
    """
    details = {"target_region": target_region, "bytes_length": bytes_length}
    if ctx.warnings:
        details["warnings"] = list(ctx.warnings)

    if ctx.dry_run:
        return

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Flash operations require explicit permission. Use the --write flag.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires a confirmation token.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set.",
            details=details,
        )

    answer = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if answer.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError("Confirmation failed. Aborted by user.", details=details)


def create_cli_safety_context(
    write_flag: bool,
    dry_run: bool = False,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """Create a SafetyContext for CLI use; prompts only when stdin is a TTY."""
    interactive = sys.stdin.isatty() and confirmation_token is None
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        dry_run=dry_run,
    )
