"""
Upload stages and the error taxonomy raised by protocol engines.

Engines raise these; the orchestrator converts them into an UploadResult.
`needs_manual_reset` is the recoverability hint surfaced to the caller.
"""

from enum import Enum
from typing import Optional, Union


class Stage(Enum):
    """Upload lifecycle stage."""
    CONFIGURATION = "configuration"
    HANDSHAKE = "handshake"
    ERASE = "erase"
    PROGRAM = "program"
    VERIFY = "verify"
    FINALIZE = "finalize"
    EXECUTE = "execute"
    CANCELLED = "cancelled"


class UploadError(Exception):
    """
    Base exception for upload failures.

    `stage` is None when the raiser cannot know it (transport and framing
    errors); the orchestrator fills in the stage that was running.
    """

    stage: Optional[Stage] = None
    needs_manual_reset = False

    def __init__(self, message: str, *, stage: Optional[Stage] = None, detail: str = ""):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.detail = detail


class HandshakeFailed(UploadError):
    """Bootloader did not answer the handshake."""

    stage = Stage.HANDSHAKE
    needs_manual_reset = True


class EraseFailed(UploadError):
    """Erase was not acknowledged (timeout or mismatched reply)."""

    stage = Stage.ERASE
    needs_manual_reset = True

    def __init__(self, message: str, *, ack=None, detail: str = ""):
        super().__init__(message, detail=detail)
        self.ack = ack


class ProgramFailed(UploadError):
    """A chunk could not be written."""

    stage = Stage.PROGRAM
    needs_manual_reset = True

    def __init__(self, message: str, *, chunk_index: int, detail: str = ""):
        super().__init__(message, detail=detail)
        self.chunk_index = chunk_index


class VerifyMismatch(UploadError):
    """Device-side check value differs from the image."""

    stage = Stage.VERIFY
    needs_manual_reset = False

    def __init__(
        self,
        message: str,
        *,
        expected_crc: Union[int, str],
        actual_crc: Union[int, str],
        detail: str = "",
    ):
        super().__init__(message, detail=detail)
        self.expected_crc = expected_crc
        self.actual_crc = actual_crc


class VerifyUnavailable(UploadError):
    """Verify response was missing or malformed; retrying is the caller's call."""

    stage = Stage.VERIFY
    needs_manual_reset = False


class UploadTimeout(UploadError):
    """A required response did not arrive within its timeout."""

    needs_manual_reset = True

    def __init__(self, message: str, *, stage: Stage, detail: str = ""):
        super().__init__(message, stage=stage, detail=detail)


class FramingError(UploadError):
    """SLIP frame or checksum could not be decoded."""

    needs_manual_reset = False


class TransportError(UploadError):
    """Channel-level I/O failure; the channel is assumed unusable."""

    needs_manual_reset = False


class Cancelled(UploadError):
    """Upload was cancelled by the caller between chunks."""

    stage = Stage.CANCELLED
    needs_manual_reset = False


class UnsupportedProtocol(UploadError):
    """No engine exists for the requested protocol family."""

    stage = Stage.CONFIGURATION
    needs_manual_reset = False
