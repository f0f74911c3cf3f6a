"""
Result objects for core operations.

The CLI prints these; library callers can inspect or serialize them.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

# Metadata keys shown in the text summary, in display order.
# Everything else in metadata only appears in JSON output.
SUMMARY_FIELDS = (
    ("family", "Family"),
    ("vendor_id", "VID"),
    ("product_id", "PID"),
    ("manufacturer", "Manufacturer"),
    ("blocks", "UF2 blocks"),
    ("block_count", "UF2 blocks"),
    ("sector_count", "Sectors"),
    ("families", "Families"),
    ("sectors", "Sectors to erase"),
    ("sectors_erased", "Sectors erased"),
    ("rebooted", "Rebooted as"),
    ("delay_ms", "Reboot delay (ms)"),
    ("serial_number", "Serial"),
)


@dataclass
class OperationResult:
    """
    Outcome of one load/erase/reboot/info operation.

    Attributes:
        ok: Whether the operation completed
        operation: Action name ("flash_uf2", "erase_region", ...)
        device: Product string of the BOOTSEL device that was driven
        region: Flash range touched, e.g. "0x10000000-0x10004000"
        bytes_len: Payload bytes written, or bytes erased
        sha256: Digest of the UF2 file, for load and inspect
        warnings / errors: Messages for the user
        metadata: Operation-specific values (block and sector counts, family)
        logs: Log lines captured while the operation ran
    """
    ok: bool
    operation: str
    device: str = ""
    region: str = ""
    bytes_len: int = 0
    sha256: str = ""
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_summary(self) -> str:
        """Human-readable multi-line summary."""
        lines = [f"[{'SUCCESS' if self.ok else 'FAILED'}] {self.operation}"]
        if self.device:
            lines.append(f"  Device: {self.device}")
        if self.region:
            lines.append(f"  Region: {self.region}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")
        if self.sha256:
            lines.append(f"  SHA-256: {self.sha256[:16]}...")

        for key, label in SUMMARY_FIELDS:
            value = self.metadata.get(key)
            if value in (None, "", []):
                continue
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            lines.append(f"  {label}: {value}")

        lines.extend(f"  Error: {e}" for e in self.errors)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def success(cls, operation: str, **kwargs) -> "OperationResult":
        return cls(ok=True, operation=operation, **kwargs)

    @classmethod
    def failure(cls, operation: str, error: str, **kwargs) -> "OperationResult":
        result = cls(ok=False, operation=operation, **kwargs)
        result.errors.append(error)
        return result
