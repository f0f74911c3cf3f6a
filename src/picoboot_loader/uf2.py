"""
UF2 firmware image parsing.

A UF2 file is a sequence of self-describing 512-byte blocks
(https://github.com/microsoft/uf2):

    offset  0  magic start 0    (0x0A324655)
    offset  4  magic start 1    (0x9E5D5157)
    offset  8  flags
    offset 12  target address
    offset 16  payload size     (<= 476, 256 for RP2 images)
    offset 20  block number
    offset 24  total blocks
    offset 28  family ID (or file size)
    offset 32  payload
    offset 508 magic end        (0x0AB16F30)

Blocks may appear in any order and need not be contiguous.
"""

import struct
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

UF2_BLOCK_SIZE = 512
UF2_HEADER_SIZE = 32
UF2_MAX_PAYLOAD = 476
UF2_PAYLOAD_SIZE = 256

UF2_MAGIC_START0 = 0x0A324655
UF2_MAGIC_START1 = 0x9E5D5157
UF2_MAGIC_END = 0x0AB16F30

UF2_FLAG_NOT_MAIN_FLASH = 0x00000001
UF2_FLAG_FILE_CONTAINER = 0x00001000
UF2_FLAG_FAMILY_ID = 0x00002000

HEADER_STRUCT = "<IIIIIIII"

# Known family IDs
FAMILY_NAMES: Dict[int, str] = {
    0xE48BFF56: "rp2040",
    0xE48BFF57: "absolute",
    0xE48BFF58: "data",
    0xE48BFF59: "rp2350-arm-s",
    0xE48BFF5A: "rp2350-riscv",
    0xE48BFF5B: "rp2350-arm-ns",
}


class ImageFormatError(ValueError):
    """The image is not a well-formed sequence of UF2 blocks"""
    pass


@dataclass(frozen=True)
class Uf2Block:
    """One parsed UF2 block."""
    index: int
    address: int
    payload: bytes
    flags: int = 0
    block_no: int = 0
    num_blocks: int = 0
    family_id: int = 0
    magic_ok: bool = True

    @property
    def size(self) -> int:
        return len(self.payload)

    @property
    def end_address(self) -> int:
        """Return end address (exclusive)."""
        return self.address + len(self.payload)


@dataclass
class Uf2Summary:
    """Overview of an image, for display before flashing."""
    block_count: int
    payload_bytes: int
    start_address: Optional[int]
    end_address: Optional[int]
    sectors: List[int] = field(default_factory=list)
    families: List[str] = field(default_factory=list)
    bad_magic_blocks: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "block_count": self.block_count,
            "payload_bytes": self.payload_bytes,
            "start_address": None if self.start_address is None else f"0x{self.start_address:08X}",
            "end_address": None if self.end_address is None else f"0x{self.end_address:08X}",
            "sector_count": len(self.sectors),
            "families": self.families,
            "bad_magic_blocks": self.bad_magic_blocks,
        }


def block_count(image: bytes) -> int:
    """
    Validate image length and return its block count.

    Raises:
        ImageFormatError: If the image is empty or not a whole number of blocks
    """
    if not image:
        raise ImageFormatError("Image is empty")
    if len(image) % UF2_BLOCK_SIZE:
        raise ImageFormatError(
            f"Image length {len(image)} is not a multiple of {UF2_BLOCK_SIZE} bytes"
        )
    return len(image) // UF2_BLOCK_SIZE


def parse_block(block: bytes, index: int = 0, strict: bool = False) -> Uf2Block:
    """
    Parse a single 512-byte UF2 block.

    Args:
        block: Exactly UF2_BLOCK_SIZE bytes
        index: Position of the block in the image (for error messages)
        strict: Raise on bad magic words instead of flagging them

    Returns:
        Parsed Uf2Block

    Raises:
        ImageFormatError: If the block is malformed
    """
    if len(block) != UF2_BLOCK_SIZE:
        raise ImageFormatError(f"Block {index}: expected {UF2_BLOCK_SIZE} bytes, got {len(block)}")

    (magic0, magic1, flags, address, size,
     block_no, num_blocks, family_id) = struct.unpack_from(HEADER_STRUCT, block, 0)
    (magic_end,) = struct.unpack_from("<I", block, UF2_BLOCK_SIZE - 4)

    magic_ok = (
        magic0 == UF2_MAGIC_START0
        and magic1 == UF2_MAGIC_START1
        and magic_end == UF2_MAGIC_END
    )
    if strict and not magic_ok:
        raise ImageFormatError(f"Block {index}: bad UF2 magic")

    if size > UF2_MAX_PAYLOAD:
        raise ImageFormatError(
            f"Block {index}: payload size {size} exceeds {UF2_MAX_PAYLOAD} bytes"
        )

    return Uf2Block(
        index=index,
        address=address,
        payload=bytes(block[UF2_HEADER_SIZE:UF2_HEADER_SIZE + size]),
        flags=flags,
        block_no=block_no,
        num_blocks=num_blocks,
        family_id=family_id,
        magic_ok=magic_ok,
    )


def iter_blocks(image: bytes, strict: bool = False) -> Iterator[Uf2Block]:
    """Yield the blocks of an image in file order."""
    count = block_count(image)
    view = memoryview(image)
    for i in range(count):
        offset = i * UF2_BLOCK_SIZE
        yield parse_block(view[offset:offset + UF2_BLOCK_SIZE], index=i, strict=strict)


def pack_block(
    address: int,
    payload: bytes,
    block_no: int = 0,
    num_blocks: int = 1,
    family_id: int = 0xE48BFF56,
    flags: int = UF2_FLAG_FAMILY_ID,
) -> bytes:
    """Build one UF2 block (payload zero padded to the block boundary)."""
    if len(payload) > UF2_MAX_PAYLOAD:
        raise ValueError(f"Payload too large: {len(payload)} bytes (max {UF2_MAX_PAYLOAD})")
    header = struct.pack(
        HEADER_STRUCT,
        UF2_MAGIC_START0,
        UF2_MAGIC_START1,
        flags,
        address,
        len(payload),
        block_no,
        num_blocks,
        family_id,
    )
    body = payload.ljust(UF2_BLOCK_SIZE - UF2_HEADER_SIZE - 4, b"\x00")
    return header + body + struct.pack("<I", UF2_MAGIC_END)


def summarize_image(image: bytes, sector_size: int = 4096) -> Uf2Summary:
    """
    Summarize an image without touching a device.

    Args:
        image: Raw UF2 file bytes
        sector_size: Flash sector size used to count distinct sectors

    Returns:
        Uf2Summary with address range, distinct sectors and families
    """
    sectors = set()
    families: List[str] = []
    bad_magic: List[int] = []
    payload_bytes = 0
    start = None
    end = None

    for block in iter_blocks(image):
        payload_bytes += block.size
        sectors.add(block.address // sector_size)
        start = block.address if start is None else min(start, block.address)
        end = block.end_address if end is None else max(end, block.end_address)
        if not block.magic_ok:
            bad_magic.append(block.index)
        if block.flags & UF2_FLAG_FAMILY_ID:
            name = FAMILY_NAMES.get(block.family_id, f"0x{block.family_id:08X}")
            if name not in families:
                families.append(name)

    return Uf2Summary(
        block_count=block_count(image),
        payload_bytes=payload_bytes,
        start_address=start,
        end_address=end,
        sectors=sorted(sectors),
        families=families,
        bad_magic_blocks=bad_magic,
    )
