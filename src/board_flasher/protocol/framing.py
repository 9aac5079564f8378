"""
Framing and checksum helpers shared by the bootloader protocols.

- SLIP encode/decode (esptool ROM loader framing)
- CRC16 with poly 0x1021, init 0 (SAM-BA device CRC, also known as XMODEM)
- ESP XOR payload checksum seeded with 0xEF
- SAM-BA ASCII command formatting
- Serial transmission time estimate for targets without flow control
"""

import math
from typing import List, Optional

from board_flasher.protocol.errors import FramingError

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD

ESP_CHECKSUM_MAGIC = 0xEF

CRC16_POLY = 0x1021

# Bits per byte on the wire for 8N1: start + 8 data + stop.
BITS_PER_BYTE = 10


def _build_crc16_table(poly: int = CRC16_POLY) -> List[int]:
    table = []
    for i in range(256):
        crc = i << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ poly) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
        table.append(crc)
    return table


CRC16_TABLE = _build_crc16_table()


def crc16_ccitt(data: bytes, crc: int = 0) -> int:
    """
    Table-driven CRC16-CCITT (poly 0x1021, init 0, no reflection).

    This is the CRC the SAM-BA `Z` command reports for a flash range.
    Pass a previous result as `crc` to continue over a split buffer.

    Args:
        data: Bytes to checksum
        crc: Starting value (0 for a fresh checksum)

    Returns:
        16-bit CRC value
    """
    crc &= 0xFFFF
    for byte in data:
        crc = ((crc << 8) & 0xFFFF) ^ CRC16_TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc


def esp_checksum(data: bytes, state: int = ESP_CHECKSUM_MAGIC) -> int:
    """Single-byte XOR checksum the ESP ROM expects for FLASH_DATA payloads."""
    for byte in data:
        state ^= byte
    return state


def slip_encode(payload: bytes) -> bytes:
    """
    SLIP-encode a packet, delimited by 0xC0 on both sides.

    0xC0 in the payload becomes 0xDB 0xDC; 0xDB becomes 0xDB 0xDD.
    """
    out = bytearray([SLIP_END])
    for byte in payload:
        if byte == SLIP_END:
            out.extend((SLIP_ESC, SLIP_ESC_END))
        elif byte == SLIP_ESC:
            out.extend((SLIP_ESC, SLIP_ESC_ESC))
        else:
            out.append(byte)
    out.append(SLIP_END)
    return bytes(out)


def slip_decode(frame: bytes) -> bytes:
    """
    Decode one SLIP frame (with or without surrounding 0xC0 delimiters).

    Raises:
        FramingError: On an invalid escape sequence or an embedded delimiter
    """
    body = frame
    if body[:1] == bytes([SLIP_END]):
        body = body[1:]
    if body[-1:] == bytes([SLIP_END]):
        body = body[:-1]

    out = bytearray()
    escaped = False
    for byte in body:
        if escaped:
            if byte == SLIP_ESC_END:
                out.append(SLIP_END)
            elif byte == SLIP_ESC_ESC:
                out.append(SLIP_ESC)
            else:
                raise FramingError(f"Invalid SLIP escape sequence: DB {byte:02X}")
            escaped = False
        elif byte == SLIP_ESC:
            escaped = True
        elif byte == SLIP_END:
            raise FramingError("Unexpected SLIP delimiter inside frame")
        else:
            out.append(byte)
    if escaped:
        raise FramingError("Truncated SLIP escape sequence at end of frame")
    return bytes(out)


class SlipDecoder:
    """
    Incremental SLIP decoder for a byte stream.

    Bytes before the first delimiter are treated as noise and discarded.
    Empty frames (back-to-back delimiters) are skipped.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._in_frame = False
        self._escaped = False
        self.discarded = 0

    def reset(self) -> None:
        self._buffer.clear()
        self._in_frame = False
        self._escaped = False

    def feed(self, data: bytes) -> List[bytes]:
        """
        Feed raw bytes; return every frame completed by them.

        Raises:
            FramingError: On an invalid escape sequence. The partial frame is
                dropped so decoding can resume at the next delimiter.
        """
        frames = []
        for byte in data:
            if not self._in_frame:
                if byte == SLIP_END:
                    self._in_frame = True
                else:
                    self.discarded += 1
                continue

            if self._escaped:
                self._escaped = False
                if byte == SLIP_ESC_END:
                    self._buffer.append(SLIP_END)
                elif byte == SLIP_ESC_ESC:
                    self._buffer.append(SLIP_ESC)
                else:
                    self._buffer.clear()
                    self._in_frame = False
                    raise FramingError(f"Invalid SLIP escape sequence: DB {byte:02X}")
            elif byte == SLIP_ESC:
                self._escaped = True
            elif byte == SLIP_END:
                if self._buffer:
                    frames.append(bytes(self._buffer))
                    self._buffer.clear()
                # A delimiter both ends one frame and may open the next.
            else:
                self._buffer.append(byte)
        return frames


def hex_arg(value: int) -> str:
    """Format an address or size as the 8-digit lower-case hex SAM-BA expects."""
    if value < 0 or value > 0xFFFFFFFF:
        raise ValueError(f"Value out of 32-bit range: {value}")
    return f"{value:08x}"


def samba_command(letter: str, *args: int) -> bytes:
    """
    Build a SAM-BA ASCII command, e.g. samba_command("S", 0x34, 4096)
    -> b"S00000034,00001000#".
    """
    if len(letter) != 1:
        raise ValueError(f"SAM-BA command must be a single letter, got {letter!r}")
    return (letter + ",".join(hex_arg(a) for a in args) + "#").encode("ascii")


def transmission_delay(num_bytes: int, baud_rate: int, margin: float = 0.0) -> float:
    """
    Seconds needed to clock num_bytes out at baud_rate (8N1), plus margin.

    Rounded up to whole milliseconds. Used where the target has no flow
    control and the host must not send the next command early.
    """
    if baud_rate <= 0:
        raise ValueError("baud_rate must be > 0")
    if num_bytes < 0:
        raise ValueError("num_bytes must be >= 0")
    millis = math.ceil(num_bytes * BITS_PER_BYTE * 1000 / baud_rate)
    return millis / 1000.0 + margin


def printable_ascii(data: bytes, terminators: Optional[bytes] = b"\r\n") -> str:
    """
    Extract printable ASCII up to the first line terminator.

    Leading terminators left over from a previous reply are skipped.
    Trailing SAM-BA prompt characters ('>') are stripped.
    """
    if terminators:
        data = data.lstrip(terminators)
        cut = len(data)
        for t in terminators:
            idx = data.find(bytes([t]))
            if idx != -1:
                cut = min(cut, idx)
        data = data[:cut]
    text = "".join(chr(b) for b in data if 0x20 <= b <= 0x7E)
    return text.rstrip(">").strip()
