"""
Firmware images and chunking.

A FirmwareImage is the raw bytes a bootloader expects. Intel HEX files are
decoded to binary here (gaps filled with 0xFF, the erased flash state) so
the engines only ever see bytes.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from intelhex import IntelHex, IntelHexError

logger = logging.getLogger(__name__)

ERASED_BYTE = 0xFF


@dataclass(frozen=True)
class FirmwareImage:
    """
    Immutable firmware bytes.

    Attributes:
        data: Image bytes
        size: Declared total length (must equal len(data))
        name: Source file name, for display
        load_address: Lowest address found in an Intel HEX file, if any
    """
    data: bytes
    size: int = -1
    name: str = ""
    load_address: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "data", bytes(self.data))
        if self.size == -1:
            object.__setattr__(self, "size", len(self.data))
        if self.size != len(self.data):
            raise ValueError(f"Declared size {self.size} != actual size {len(self.data)}")

    def __len__(self) -> int:
        return self.size


@dataclass(frozen=True)
class Chunk:
    """Slice of an image bound for one flash address."""
    index: int
    address: int
    data: bytes

    @property
    def end(self) -> int:
        return self.address + len(self.data)


def chunk_image(image: FirmwareImage, page_size: int, base: int = 0) -> List[Chunk]:
    """
    Split an image into page-sized chunks in ascending address order.

    Chunks do not overlap and cover the image exactly; the last chunk holds
    the remainder and is not padded.

    Args:
        image: Image to split
        page_size: Chunk size in bytes
        base: Flash address of the first byte

    Returns:
        List of Chunk
    """
    if page_size <= 0:
        raise ValueError("page_size must be > 0")
    return [
        Chunk(index, base + offset, image.data[offset:offset + page_size])
        for index, offset in enumerate(range(0, image.size, page_size))
    ]


def _to_binary(ih: IntelHex) -> Tuple[bytes, int]:
    low = ih.minaddr()
    if low is None:
        return b"", 0
    ih.padding = ERASED_BYTE
    return ih.tobinstr(), low


def parse_intel_hex(text: str) -> Tuple[bytes, int]:
    """
    Decode Intel HEX text to a contiguous binary image.

    Gaps between records are filled with the erased byte value.

    Returns:
        (image bytes starting at the lowest address, lowest address)

    Raises:
        ValueError: On malformed records, bad checksums or overlapping data
    """
    ih = IntelHex()
    try:
        ih.loadhex(io.StringIO(text))
    except IntelHexError as e:
        raise ValueError(str(e)) from e
    return _to_binary(ih)


def load_firmware(path: Union[str, Path]) -> FirmwareImage:
    """
    Load a firmware file (.hex as Intel HEX, anything else as raw binary).

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If an Intel HEX file is malformed or the image is empty
    """
    path = Path(path)
    if path.suffix.lower() in (".hex", ".ihex", ".ihx"):
        data, low = parse_intel_hex(path.read_text(encoding="ascii"))
        image = FirmwareImage(data, name=path.name, load_address=low)
    else:
        image = FirmwareImage(path.read_bytes(), name=path.name)

    if not image.size:
        raise ValueError(f"Firmware file {path.name} is empty")
    logger.info(f"Loaded {path.name}: {image.size} bytes")
    return image
