"""
Board registry for supported bootloaders.

Provides a single source of truth for:
- Protocol family per board (sam-ba, stk500, esptool)
- Flash layout (base address, SRAM staging buffer, entry point, page size)
- Timing constants (timeouts are data so slow-flash boards can override them)
- Bootloader entry requirements (1200-baud touch)

Usage:
    from board_flasher.models import list_boards, get_board

    # List all known boards
    boards = list_boards()

    # Look up by short name or FQBN
    board = get_board("arduino:renesas_uno:unor4wifi")
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from board_flasher.protocol.base import AckPolicy


class ProtocolFamily(Enum):
    """Bootloader protocol family."""
    SAM_BA = "sam-ba"     # BOSSA-style ASCII commands (ARM)
    STK500 = "stk500"     # STK500v1 binary commands (AVR/Optiboot)
    ESPTOOL = "esptool"   # SLIP-framed ROM loader commands (ESP32)


@dataclass(frozen=True)
class Timing:
    """
    Timing constants for one board, in seconds.

    Attributes:
        command_timeout: Short command/ACK exchanges
        erase_timeout: Flash erase acknowledgement
        write_timeout: Flash write (buffer-to-flash copy, page program)
        sync_window: Rolling window for sync replies (STK500/esptool)
        retry_delay: Pause between attempts after flushing input
        settle_delay: Pause between a write command and its raw payload
        transmit_margin: Added to the computed payload transmission time
        flush_duration: Bound on discarding stale input
        handshake_ack_timeout: Wait for the optional mode-set reply
        version_timeout: Wait for the version string
        verify_timeout: Wait for the device CRC/digest
        inter_chunk_delay: Pause after each committed chunk
    """
    command_timeout: float = 1.0
    erase_timeout: float = 5.0
    write_timeout: float = 5.0
    sync_window: float = 0.2
    retry_delay: float = 0.2
    settle_delay: float = 0.005
    transmit_margin: float = 0.02
    flush_duration: float = 0.1
    handshake_ack_timeout: float = 1.0
    version_timeout: float = 2.0
    verify_timeout: float = 5.0
    inter_chunk_delay: float = 0.0


@dataclass(frozen=True)
class FlashApplet:
    """Code preloaded into the bootloader buffer before erase (SAM-BA)."""
    code: bytes
    buffer_offset: int = 0
    register_writes: Tuple[Tuple[int, int], ...] = ()


# 52-byte Thumb copy loop the Arduino IDE stages at buffer offset 0 on
# Uno R4 boards, followed by two flash configuration word writes
# (from a USB capture of an IDE upload).
RENESAS_FLASH_APPLET = FlashApplet(
    code=bytes.fromhex(
        "09 48 0a 49 0a 4a 02 e0 08 c9 08 c0 01 3a 00 2a"
        "fa d1 04 48 00 28 01 d1 01 48 85 46 70 47 c0 46"
    ) + bytes(20),
    buffer_offset=0,
    register_writes=((0x30, 0x400), (0x20, 0x00)),
)


@dataclass(frozen=True)
class BoardDescriptor:
    """
    Everything an engine needs to know about a target board.

    Addresses are as the bootloader sees them: for Renesas SAM-BA boards the
    bootloader adds its own sketch offset to `flash_base`, while
    `entry_address` is absolute.
    """
    # Basic identification
    name: str
    family: ProtocolFamily
    fqbn: str = ""
    vendor: str = "Arduino"

    # Serial configuration
    baud_rate: int = 115200
    requires_1200bps_touch: bool = False

    # Flash layout
    flash_base: int = 0
    bootloader_offset: int = 0  # added by the bootloader to every flash address
    sram_buffer: Optional[int] = None
    entry_address: Optional[int] = None
    page_size: int = 128
    flash_size: Optional[int] = None

    # Retry policy
    retries: int = 3
    handshake_attempts: int = 3
    proceed_on_handshake_failure: bool = False

    # SAM-BA: reply to the buffer-to-flash copy command. Some bootloaders
    # (observed on Renesas RA4M1 boards) stay silent even on success. This
    # was found by capture, not from vendor documentation, so it is a
    # per-board setting rather than a property of the protocol.
    copy_ack_policy: AckPolicy = AckPolicy.BEST_EFFORT
    applet: Optional[FlashApplet] = None
    jump_to_entry: bool = False  # G#entry instead of K# to start the sketch

    # STK500
    signature: Optional[bytes] = None
    word_addressing: bool = True
    sync_attempts: int = 5

    # esptool
    verify_digest: bool = True
    reboot_after_upload: bool = True
    status_bytes: int = 4

    timing: Timing = field(default_factory=Timing)
    notes: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.page_size <= 0:
            raise ValueError(f"{self.name}: page_size must be > 0")
        if self.baud_rate <= 0:
            raise ValueError(f"{self.name}: baud_rate must be > 0")
        if self.retries < 1 or self.handshake_attempts < 1:
            raise ValueError(f"{self.name}: retries and handshake_attempts must be >= 1")
        if self.sync_attempts < 1:
            raise ValueError(f"{self.name}: sync_attempts must be >= 1")
        if self.status_bytes < 1:
            raise ValueError(f"{self.name}: status_bytes must be >= 1")
        if self.family is ProtocolFamily.SAM_BA and self.sram_buffer is None:
            raise ValueError(f"{self.name}: sam-ba boards need an sram_buffer address")

    def to_dict(self) -> Dict:
        """Convert to JSON-serializable dict."""
        return {
            "name": self.name,
            "fqbn": self.fqbn,
            "family": self.family.value,
            "baud_rate": self.baud_rate,
            "flash_base": f"0x{self.flash_base:08X}",
            "bootloader_offset": f"0x{self.bootloader_offset:X}",
            "sram_buffer": None if self.sram_buffer is None else f"0x{self.sram_buffer:08X}",
            "entry_address": None if self.entry_address is None else f"0x{self.entry_address:08X}",
            "page_size": self.page_size,
            "flash_size": self.flash_size,
            "requires_1200bps_touch": self.requires_1200bps_touch,
            "notes": list(self.notes),
        }


# =============================================================================
# Known boards
# =============================================================================

_OPTIBOOT_TIMING = Timing(
    command_timeout=0.5,
    erase_timeout=1.0,
    write_timeout=1.0,
    sync_window=0.2,
    retry_delay=0.1,
)

_RENESAS_TIMING = Timing(
    command_timeout=1.0,
    erase_timeout=5.0,
    write_timeout=5.0,
    retry_delay=0.2,
    inter_chunk_delay=0.25,
)

_ESP_TIMING = Timing(
    command_timeout=3.0,
    erase_timeout=10.0,
    write_timeout=5.0,
    sync_window=0.1,
    retry_delay=0.05,
)

BOARDS: Dict[str, BoardDescriptor] = {}


def _register(board: BoardDescriptor) -> BoardDescriptor:
    BOARDS[board.name] = board
    return board


_register(BoardDescriptor(
    name="uno",
    fqbn="arduino:avr:uno",
    family=ProtocolFamily.STK500,
    baud_rate=115200,
    page_size=128,
    flash_size=0x7E00,
    signature=b"\x1E\x95\x0F",
    timing=_OPTIBOOT_TIMING,
    notes=("ATmega328P with Optiboot",),
))

_register(BoardDescriptor(
    name="nano",
    fqbn="arduino:avr:nano",
    family=ProtocolFamily.STK500,
    baud_rate=115200,
    page_size=128,
    flash_size=0x7E00,
    signature=b"\x1E\x95\x0F",
    timing=_OPTIBOOT_TIMING,
    notes=("New bootloader; old-bootloader Nanos need --baud 57600",),
))

_register(BoardDescriptor(
    name="pro-mini",
    fqbn="arduino:avr:pro",
    family=ProtocolFamily.STK500,
    baud_rate=57600,
    page_size=128,
    flash_size=0x7800,
    signature=b"\x1E\x95\x0F",
    timing=_OPTIBOOT_TIMING,
))

_register(BoardDescriptor(
    name="unor4wifi",
    fqbn="arduino:renesas_uno:unor4wifi",
    family=ProtocolFamily.SAM_BA,
    baud_rate=230400,
    requires_1200bps_touch=True,
    flash_base=0x0000,
    bootloader_offset=0x4000,
    sram_buffer=0x34,
    entry_address=0x4000,
    page_size=4096,
    flash_size=0x40000 - 0x4000,
    proceed_on_handshake_failure=True,
    copy_ack_policy=AckPolicy.BEST_EFFORT,
    applet=RENESAS_FLASH_APPLET,
    timing=_RENESAS_TIMING,
    notes=(
        "Bootloader adds its 0x4000 sketch offset to S/Y/X addresses",
        "Flash-copy ACK is sometimes absent on success (unverified vendor behaviour)",
    ),
))

_register(BoardDescriptor(
    name="unor4minima",
    fqbn="arduino:renesas_uno:minima",
    family=ProtocolFamily.SAM_BA,
    baud_rate=230400,
    requires_1200bps_touch=True,
    flash_base=0x0000,
    bootloader_offset=0x4000,
    sram_buffer=0x34,
    entry_address=0x4000,
    page_size=4096,
    flash_size=0x40000 - 0x4000,
    proceed_on_handshake_failure=True,
    copy_ack_policy=AckPolicy.BEST_EFFORT,
    applet=RENESAS_FLASH_APPLET,
    timing=_RENESAS_TIMING,
))

_register(BoardDescriptor(
    name="mkr1000",
    fqbn="arduino:samd:mkr1000",
    family=ProtocolFamily.SAM_BA,
    baud_rate=921600,
    requires_1200bps_touch=True,
    flash_base=0x2000,
    sram_buffer=0x20001000,
    entry_address=0x2000,
    page_size=4096,
    flash_size=0x40000 - 0x2000,
    copy_ack_policy=AckPolicy.REQUIRED,
    jump_to_entry=True,
))

_register(BoardDescriptor(
    name="nano33iot",
    fqbn="arduino:samd:nano_33_iot",
    family=ProtocolFamily.SAM_BA,
    baud_rate=921600,
    requires_1200bps_touch=True,
    flash_base=0x2000,
    sram_buffer=0x20001000,
    entry_address=0x2000,
    page_size=4096,
    flash_size=0x40000 - 0x2000,
    copy_ack_policy=AckPolicy.REQUIRED,
    jump_to_entry=True,
))

_register(BoardDescriptor(
    name="esp32",
    fqbn="esp32:esp32:esp32",
    vendor="Espressif",
    family=ProtocolFamily.ESPTOOL,
    baud_rate=115200,
    flash_base=0x10000,
    page_size=0x400,
    status_bytes=4,
    timing=_ESP_TIMING,
    notes=("Application partition at 0x10000",),
))


# =============================================================================
# Lookup
# =============================================================================

def list_boards() -> List[BoardDescriptor]:
    """Get all known boards, sorted by name."""
    return [BOARDS[name] for name in sorted(BOARDS)]


def get_boards_by_family(family: ProtocolFamily) -> List[BoardDescriptor]:
    """Get all known boards using one protocol family."""
    return [b for b in list_boards() if b.family is family]


def get_board(name: str) -> BoardDescriptor:
    """
    Look up a board by short name or FQBN.

    An unknown FQBN falls back to the first board sharing its
    `vendor:architecture` prefix (e.g. "arduino:avr:diecimila" -> uno).

    Raises:
        KeyError: If nothing matches
    """
    key = name.strip()
    if key in BOARDS:
        return BOARDS[key]

    lowered = key.lower()
    for board in BOARDS.values():
        if board.name.lower() == lowered or board.fqbn.lower() == lowered:
            return board

    parts = lowered.split(":")
    if len(parts) >= 2:
        prefix = ":".join(parts[:2]) + ":"
        for board in BOARDS.values():
            if board.fqbn.lower().startswith(prefix):
                return board

    raise KeyError(f"Unknown board '{name}'. Known boards: {', '.join(sorted(BOARDS))}")
