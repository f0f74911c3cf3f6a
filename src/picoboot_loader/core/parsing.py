"""
Centralized parsing helpers for flash addresses and sizes given on the command line.
"""

from typing import Optional


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    Parse a flash address from string.

    Accepts:
        - Decimal: "268435456"
        - Hex with 0x prefix: "0x10000000" or "0X10000000"
        - Hex with h suffix: "10000000h"
        - None or "" for "not given"

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip().replace("_", "")
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid address '{value}'. Use decimal, hex (0x10000000), or suffix (10000000h)."
        )


def parse_size(value: str) -> int:
    """
    Parse a byte count, allowing k/K and m/M suffixes (binary multiples).

    Examples: "4096", "0x1000", "4k", "2M"

    Raises:
        ValueError: If value cannot be parsed.
    """
    text = value.strip()
    multiplier = 1
    if text[-1:] in ("k", "K"):
        multiplier, text = 1024, text[:-1]
    elif text[-1:] in ("m", "M"):
        multiplier, text = 1024 * 1024, text[:-1]

    try:
        number = parse_address(text)
    except ValueError:
        number = None
    if number is None:
        raise ValueError(f"Invalid size '{value}'. Use bytes (4096), hex (0x1000) or 4k / 1M.")
    return number * multiplier
