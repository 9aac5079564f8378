"""
STK500v1 protocol engine (AVR boards running Optiboot).

Every command ends with CRC_EOP (0x20); every reply is framed by
STK_INSYNC (0x14) ... STK_OK (0x10). Flash addresses are word addresses.

Page writes are verified by reading each page back, since the protocol
has no device-side checksum command.
"""

import logging
from typing import List, Optional, Tuple

from board_flasher.protocol.base import AckResult, LinkIO
from board_flasher.protocol.errors import (
    EraseFailed,
    HandshakeFailed,
    ProgramFailed,
    Stage,
    TransportError,
    UploadError,
    VerifyMismatch,
    VerifyUnavailable,
)
from board_flasher.protocol.framing import crc16_ccitt

logger = logging.getLogger(__name__)

# Commands
STK_GET_SYNC = 0x30
STK_ENTER_PROGMODE = 0x50
STK_LEAVE_PROGMODE = 0x51
STK_CHIP_ERASE = 0x52
STK_LOAD_ADDRESS = 0x55
STK_PROG_PAGE = 0x64
STK_READ_PAGE = 0x74
STK_READ_SIGN = 0x75
CRC_EOP = 0x20

# Replies
STK_INSYNC = 0x14
STK_OK = 0x10

MEMTYPE_FLASH = 0x46  # 'F'


def _hex(data: bytes) -> str:
    return data.hex(" ").upper() or "<empty>"


class Stk500Engine:
    """
    STK500v1 engine.

    Page size, timing and the expected device signature come from the
    board descriptor; nothing here is specific to one AVR part.
    """

    name = "STK500"
    VERIFY_PER_CHUNK = True

    @classmethod
    def address_limit(cls, board) -> int:
        """First byte address LOAD_ADDRESS cannot carry (16-bit field)."""
        return 0x20000 if board.word_addressing else 0x10000

    def __init__(self, link: LinkIO, board):
        self.link = link
        self.board = board
        self.timing = board.timing
        self.signature: Optional[bytes] = None
        self.warnings: List[str] = []
        self.attempts = 0

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    def _exchange(
        self,
        body: bytes,
        timeout: float,
        annotation: str,
        reply_len: int = 0,
    ) -> Tuple[AckResult, bytes]:
        """
        Send body + CRC_EOP and read INSYNC, reply_len data bytes, OK.

        Returns:
            (AckResult, data bytes between INSYNC and OK)
        """
        self.link.send(body + bytes([CRC_EOP]), annotation)
        start = self.link.clock()
        reply = self.link.read_exact(reply_len + 2, timeout, f"{annotation} reply")
        elapsed = self.link.clock() - start

        if not reply:
            return AckResult.timed_out(reply, elapsed), b""
        if len(reply) == reply_len + 2 and reply[0] == STK_INSYNC and reply[-1] == STK_OK:
            return AckResult.acknowledged(reply, elapsed), reply[1:-1]
        return AckResult.mismatched(reply, elapsed), b""

    def _record_failure(self, annotation: str, ack: AckResult) -> None:
        self.link.note(
            f"{annotation} {ack.status.value}",
            expected=bytes([STK_INSYNC, STK_OK]),
            received=ack.received,
            elapsed=ack.elapsed,
        )

    def _recover(self) -> None:
        self.link.flush(self.timing.flush_duration)
        self.link.wait(self.timing.retry_delay, "retry delay")

    def _retrying(self, body: bytes, timeout: float, annotation: str, reply_len: int = 0):
        """Run one exchange up to board.retries times; return the last result."""
        retries = self.board.retries
        ack, data = None, b""
        for attempt in range(1, retries + 1):
            ack, data = self._exchange(body, timeout, annotation, reply_len)
            if ack:
                return ack, data
            self._record_failure(annotation, ack)
            logger.warning(f"{annotation} attempt {attempt}/{retries}: {ack.describe()}")
            if attempt < retries:
                self._recover()
        return ack, data

    def _word_address(self, address: int) -> int:
        word = address >> 1 if self.board.word_addressing else address
        if word > 0xFFFF:
            raise UploadError(
                f"Address 0x{address:X} is beyond the 16-bit STK500v1 range",
                stage=Stage.CONFIGURATION,
            )
        return word

    def _load_address(self, address: int, annotation: str) -> AckResult:
        word = self._word_address(address)
        ack, _ = self._retrying(
            bytes([STK_LOAD_ADDRESS, word & 0xFF, (word >> 8) & 0xFF]),
            self.timing.command_timeout,
            annotation,
        )
        return ack

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sync(self) -> bool:
        """
        Send GET_SYNC until INSYNC OK arrives within the sync window.

        Bytes are scanned as a stream so noise before the pair is ignored.
        """
        t = self.timing
        attempts = self.board.sync_attempts
        for attempt in range(1, attempts + 1):
            logger.debug(f"Sync attempt {attempt}/{attempts}")
            self.link.send(bytes([STK_GET_SYNC, CRC_EOP]), "get sync")
            deadline = self.link.clock() + t.sync_window
            seen_insync = False
            while True:
                remaining = deadline - self.link.clock()
                if remaining <= 0:
                    break
                chunk = self.link.read_available(64, remaining, "sync reply")
                for byte in chunk:
                    if seen_insync and byte == STK_OK:
                        logger.info("STK500 in sync")
                        return True
                    seen_insync = byte == STK_INSYNC
            self.link.note(f"Sync attempt {attempt} timed out window")
            self.link.wait(t.retry_delay, "sync retry delay")
        return False

    def handshake(self) -> str:
        """
        Sync, enter programming mode and check the device signature.

        Returns:
            Device signature as hex

        Raises:
            HandshakeFailed: If sync, programming mode or the signature check fails
        """
        if not self.sync():
            raise HandshakeFailed(
                f"No STK500 sync after {self.board.sync_attempts} attempts",
                detail="check the port and that the bootloader is running",
            )
        self.link.flush(self.timing.flush_duration)

        ack, _ = self._retrying(
            bytes([STK_ENTER_PROGMODE]), self.timing.command_timeout, "enter progmode"
        )
        if not ack:
            raise HandshakeFailed("Could not enter programming mode", detail=ack.describe())

        ack, signature = self._retrying(
            bytes([STK_READ_SIGN]), self.timing.command_timeout, "read signature", reply_len=3
        )
        if not ack:
            raise HandshakeFailed("Could not read device signature", detail=ack.describe())
        self.signature = signature
        logger.info(f"Device signature: {signature.hex().upper()}")

        expected = self.board.signature
        if expected is not None and signature != expected:
            self.link.note("Signature mismatch", expected=expected, received=signature)
            raise HandshakeFailed(
                f"Device signature {signature.hex().upper()} does not match "
                f"{self.board.name} ({expected.hex().upper()})",
            )
        return signature.hex().upper()

    def erase(self, image) -> AckResult:
        """
        Chip erase.

        Optiboot acknowledges immediately and erases each page as it is
        written.
        """
        ack, _ = self._retrying(bytes([STK_CHIP_ERASE]), self.timing.erase_timeout, "chip erase")
        if not ack:
            raise EraseFailed(
                f"Chip erase not acknowledged ({ack.status.value})",
                ack=ack,
                detail=ack.describe(),
            )
        return ack

    def program_chunk(self, chunk) -> None:
        """Load the page address and write one page."""
        size = len(chunk.data)
        retries = self.board.retries
        failure = ""
        for attempt in range(1, retries + 1):
            self.attempts = attempt
            ack = self._load_address(chunk.address, f"load address 0x{chunk.address:04X}")
            if not ack:
                failure = f"load address {ack.describe()}"
                break

            body = (
                bytes([STK_PROG_PAGE, (size >> 8) & 0xFF, size & 0xFF, MEMTYPE_FLASH])
                + chunk.data
            )
            ack, _ = self._exchange(body, self.timing.write_timeout, f"program page {chunk.index}")
            if ack:
                return
            self._record_failure(f"program page {chunk.index}", ack)
            failure = f"program page {ack.describe()}"
            logger.warning(f"Page {chunk.index} attempt {attempt}/{retries}: {failure}")
            if attempt < retries:
                self._recover()

        raise ProgramFailed(
            f"Page {chunk.index} at 0x{chunk.address:04X} could not be written",
            chunk_index=chunk.index,
            detail=failure,
        )

    def verify_chunk(self, chunk) -> None:
        """
        Read a page back and compare it byte for byte.

        Raises:
            VerifyMismatch: Read-back differs (CRC16 of both sides reported)
            VerifyUnavailable: The page could not be read back
        """
        size = len(chunk.data)
        ack = self._load_address(chunk.address, f"load address 0x{chunk.address:04X}")
        if ack:
            ack, readback = self._retrying(
                bytes([STK_READ_PAGE, (size >> 8) & 0xFF, size & 0xFF, MEMTYPE_FLASH]),
                self.timing.verify_timeout,
                f"read page {chunk.index}",
                reply_len=size,
            )
        if not ack:
            raise VerifyUnavailable(
                f"Page {chunk.index} could not be read back",
                detail=ack.describe(),
            )

        if readback != chunk.data:
            offset = next(i for i, (a, b) in enumerate(zip(readback, chunk.data)) if a != b)
            expected_crc = crc16_ccitt(chunk.data)
            actual_crc = crc16_ccitt(readback)
            self.link.note(
                f"Read-back mismatch in page {chunk.index} at offset {offset}",
                expected=chunk.data[offset:offset + 8],
                received=readback[offset:offset + 8],
            )
            raise VerifyMismatch(
                f"Page {chunk.index} at 0x{chunk.address + offset:04X} differs from image",
                expected_crc=expected_crc,
                actual_crc=actual_crc,
                detail=f"first difference at byte {offset}",
            )

    def finalize(self) -> None:
        """
        Leave programming mode. Optiboot starts the sketch through its
        watchdog right after replying, so a lost reply is only a warning.
        """
        ack, _ = self._exchange(
            bytes([STK_LEAVE_PROGMODE]), self.timing.command_timeout, "leave progmode"
        )
        if not ack:
            self._record_failure("leave progmode", ack)
            message = f"Leave programming mode {ack.describe()}"
            logger.warning(message)
            self.warnings.append(message)

    def execute(self) -> None:
        logger.info("Sketch starts after the bootloader watchdog reset")

    def reset(self) -> None:
        """Best-effort leave programming mode, used when an upload is abandoned."""
        try:
            self.link.send(bytes([STK_LEAVE_PROGMODE, CRC_EOP]), "leave progmode")
        except TransportError as e:
            logger.warning(f"Reset not sent: {e}")
