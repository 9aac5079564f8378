"""Bootloader protocol layer - transport, framing and one engine per bootloader family."""

from .base import AckPolicy, AckResult, AckStatus, LinkIO
from .errors import (
    Cancelled,
    EraseFailed,
    FramingError,
    HandshakeFailed,
    ProgramFailed,
    Stage,
    TransportError,
    UnsupportedProtocol,
    UploadError,
    UploadTimeout,
    VerifyMismatch,
    VerifyUnavailable,
)
from .framing import (
    SlipDecoder,
    crc16_ccitt,
    esp_checksum,
    slip_decode,
    slip_encode,
    transmission_delay,
)
from .transport import (
    ByteChannel,
    SerialChannel,
    list_serial_ports,
    perform_1200bps_touch,
)
from .samba import SamBaEngine
from .stk500 import Stk500Engine
from .esptool import EspToolEngine

__all__ = [
    # Engine vocabulary
    "AckPolicy",
    "AckResult",
    "AckStatus",
    "LinkIO",
    # Errors
    "Cancelled",
    "EraseFailed",
    "FramingError",
    "HandshakeFailed",
    "ProgramFailed",
    "Stage",
    "TransportError",
    "UnsupportedProtocol",
    "UploadError",
    "UploadTimeout",
    "VerifyMismatch",
    "VerifyUnavailable",
    # Framing
    "SlipDecoder",
    "crc16_ccitt",
    "esp_checksum",
    "slip_decode",
    "slip_encode",
    "transmission_delay",
    # Transport
    "ByteChannel",
    "SerialChannel",
    "list_serial_ports",
    "perform_1200bps_touch",
    # Engines
    "SamBaEngine",
    "Stk500Engine",
    "EspToolEngine",
]
