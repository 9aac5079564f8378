"""
Standardized warning and message system for upload results.

Provides structured warning items with stable codes and remediation hints
so that every front end reports the same failure the same way.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from board_flasher.protocol.errors import (
    Cancelled,
    EraseFailed,
    FramingError,
    HandshakeFailed,
    ProgramFailed,
    Stage,
    TransportError,
    UnsupportedProtocol,
    UploadTimeout,
    VerifyMismatch,
    VerifyUnavailable,
)


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Connection
    W_HANDSHAKE_FAILED = "W_HANDSHAKE_FAILED"
    W_HANDSHAKE_ASSUMED = "W_HANDSHAKE_ASSUMED"
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"
    W_FRAMING_ERROR = "W_FRAMING_ERROR"

    # Flash
    W_ERASE_FAILED = "W_ERASE_FAILED"
    W_PROGRAM_FAILED = "W_PROGRAM_FAILED"
    W_ACK_MISSING = "W_ACK_MISSING"
    W_EXIT_UNCONFIRMED = "W_EXIT_UNCONFIRMED"

    # Verification
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"
    W_VERIFY_UNAVAILABLE = "W_VERIFY_UNAVAILABLE"

    # Operation
    W_CANCELLED = "W_CANCELLED"
    W_BOARD_UNSUPPORTED = "W_BOARD_UNSUPPORTED"
    W_IMAGE_REJECTED = "W_IMAGE_REJECTED"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_HANDSHAKE_FAILED:
        "Board may not be in bootloader mode. Double-tap reset (native USB boards) "
        "or hold BOOT while resetting (ESP32), then retry.",
    WarningCode.W_HANDSHAKE_ASSUMED:
        "Bootloader did not confirm the handshake. The final verify decides whether the upload worked.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check cable connection. Try a lower baud rate with --baud.",
    WarningCode.W_SERIAL_ERROR:
        "Close other serial apps (Arduino IDE, serial monitors). Check the USB driver.",
    WarningCode.W_FRAMING_ERROR:
        "Received frames were corrupted. Check the cable and baud rate.",
    WarningCode.W_ERASE_FAILED:
        "Press reset to re-enter the bootloader and retry the upload.",
    WarningCode.W_PROGRAM_FAILED:
        "Flash is partially written. Re-enter the bootloader and upload again.",
    WarningCode.W_ACK_MISSING:
        "Some bootloaders omit this acknowledgement. Relying on the device checksum.",
    WarningCode.W_EXIT_UNCONFIRMED:
        "Flash was already verified. If the sketch does not start, press reset once.",
    WarningCode.W_VERIFY_MISMATCH:
        "Flash contents do not match the image. Do not retry blindly: check the image "
        "and flash base address, then upload again.",
    WarningCode.W_VERIFY_UNAVAILABLE:
        "The device did not report a checksum. Retry the upload to confirm the flash contents.",
    WarningCode.W_CANCELLED:
        "Upload was cancelled. The board was sent a reset; re-upload to get a complete image.",
    WarningCode.W_BOARD_UNSUPPORTED:
        "Check supported boards with the 'boards' command.",
    WarningCode.W_IMAGE_REJECTED:
        "Check that the firmware was built for this board.",
    WarningCode.W_UNKNOWN:
        "Check the exchange log (--log-file) for details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create a WARN-level warning."""
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an ERROR-level warning."""
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


_ERROR_CODES = (
    (HandshakeFailed, WarningCode.W_HANDSHAKE_FAILED),
    (EraseFailed, WarningCode.W_ERASE_FAILED),
    (ProgramFailed, WarningCode.W_PROGRAM_FAILED),
    (VerifyMismatch, WarningCode.W_VERIFY_MISMATCH),
    (VerifyUnavailable, WarningCode.W_VERIFY_UNAVAILABLE),
    (UploadTimeout, WarningCode.W_SERIAL_TIMEOUT),
    (FramingError, WarningCode.W_FRAMING_ERROR),
    (TransportError, WarningCode.W_SERIAL_ERROR),
    (Cancelled, WarningCode.W_CANCELLED),
    (UnsupportedProtocol, WarningCode.W_BOARD_UNSUPPORTED),
)


def code_for_error(error) -> WarningCode:
    """Map an UploadError to its warning code."""
    for error_type, code in _ERROR_CODES:
        if isinstance(error, error_type):
            return code
    if getattr(error, "stage", None) is Stage.CONFIGURATION:
        return WarningCode.W_IMAGE_REJECTED
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """
    Convert plain engine warning strings to WarningItem list.

    Attempts to detect known patterns and assign appropriate codes.
    """
    items = []
    for msg in warning_strings:
        msg_lower = msg.lower()
        if "programming mode" in msg_lower:
            code = WarningCode.W_EXIT_UNCONFIRMED
        elif "handshake" in msg_lower or "version" in msg_lower:
            code = WarningCode.W_HANDSHAKE_ASSUMED
        elif "timed out" in msg_lower or "mismatch" in msg_lower:
            code = WarningCode.W_ACK_MISSING
        else:
            code = WarningCode.W_UNKNOWN
        items.append(WarningItem(level=default_level, code=code, title=msg))
    return items


def result_to_warnings(result) -> List[WarningItem]:
    """
    Convert an UploadResult's warnings and failure to WarningItem list.

    Args:
        result: UploadResult from the orchestrator

    Returns:
        List of WarningItem objects, the failure (if any) last
    """
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    if not result.ok:
        detail = result.error.detail if result.error is not None else ""
        items.append(WarningItem.error(code_for_error(result.error), result.reason, detail))
    return items
