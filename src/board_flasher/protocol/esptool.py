"""
ESP32 ROM loader protocol engine.

Packets are SLIP framed. Requests and responses share one header layout
(little-endian):

    direction:u8  op:u8  size:u16  value/checksum:u32  data[size]

Requests use direction 0; for FLASH_DATA the u32 field carries the XOR
checksum of the payload seeded with 0xEF. Responses use direction 1 and end
with status bytes (4 on ESP32 ROM, 2 on ESP8266): the first is non-zero on
failure and the second holds the error code.
"""

import hashlib
import logging
import math
import struct
from dataclasses import dataclass
from typing import List, Optional

from board_flasher.protocol.base import AckResult, LinkIO
from board_flasher.protocol.errors import (
    EraseFailed,
    FramingError,
    HandshakeFailed,
    ProgramFailed,
    Stage,
    TransportError,
    UploadError,
    UploadTimeout,
    VerifyMismatch,
    VerifyUnavailable,
)
from board_flasher.protocol.framing import SlipDecoder, esp_checksum, slip_encode

logger = logging.getLogger(__name__)

# Opcodes
ESP_FLASH_BEGIN = 0x02
ESP_FLASH_DATA = 0x03
ESP_FLASH_END = 0x04
ESP_SYNC = 0x08
ESP_SPI_FLASH_MD5 = 0x13

DIRECTION_REQUEST = 0x00
DIRECTION_RESPONSE = 0x01

HEADER = struct.Struct("<BBHI")

SYNC_PAYLOAD = b"\x07\x07\x12\x20" + b"\x55" * 32

# Erase happens inside FLASH_BEGIN; large images need longer.
ERASE_TIMEOUT_PER_MB = 30.0
MD5_TIMEOUT_PER_MB = 8.0
MIB = 0x100000

ROM_ERRORS = {
    0x05: "received message is invalid",
    0x06: "failed to act on received message",
    0x07: "invalid CRC in message",
    0x08: "flash write error",
    0x09: "flash read error",
    0x0A: "flash read length error",
    0x0B: "deflate error",
}


@dataclass(frozen=True)
class EspResponse:
    """Decoded response frame."""
    op: int
    value: int
    data: bytes
    status: bytes

    @property
    def failed(self) -> bool:
        return self.status[0] != 0

    def error_text(self) -> str:
        code = self.status[1] if len(self.status) > 1 else 0
        return f"status {self.status.hex(' ').upper()} ({ROM_ERRORS.get(code, 'unknown error')})"


def build_request(op: int, data: bytes = b"", checksum: int = 0) -> bytes:
    """Header + payload, before SLIP encoding."""
    return HEADER.pack(DIRECTION_REQUEST, op, len(data), checksum) + data


def scaled_timeout(seconds_per_mb: float, size: int, minimum: float) -> float:
    """Timeout proportional to the number of bytes involved, never below minimum."""
    return max(minimum, seconds_per_mb * size / MIB)


class EspToolEngine:
    """
    ESP ROM loader engine.

    Each FLASH_DATA block is one chunk; the chunk index is the block
    sequence number. The whole image is checked once at the end with
    SPI_FLASH_MD5.
    """

    name = "esptool"
    VERIFY_PER_CHUNK = False

    @classmethod
    def address_limit(cls, board) -> int:
        return 1 << 32

    def __init__(self, link: LinkIO, board):
        self.link = link
        self.board = board
        self.timing = board.timing
        self.decoder = SlipDecoder()
        self.warnings: List[str] = []
        self.attempts = 0

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    def _parse(self, frame: bytes) -> Optional[EspResponse]:
        """
        Decode a response frame; None for frames that are not responses.

        Raises:
            FramingError: Truncated frame or length field disagreeing with the data
        """
        if len(frame) < HEADER.size:
            raise FramingError(f"Truncated response frame ({len(frame)} bytes)")
        direction, op, size, value = HEADER.unpack_from(frame)
        if direction != DIRECTION_RESPONSE:
            return None
        body = frame[HEADER.size:]
        if len(body) != size:
            raise FramingError(
                f"Response to op 0x{op:02X} declares {size} data bytes, got {len(body)}"
            )
        status_len = self.board.status_bytes
        if size < status_len:
            raise FramingError(f"Response to op 0x{op:02X} too short for its status bytes")
        return EspResponse(op, value, body[:size - status_len], body[size - status_len:])

    def command(
        self,
        op: int,
        data: bytes = b"",
        checksum: int = 0,
        timeout: float = 3.0,
        annotation: str = "",
    ) -> Optional[EspResponse]:
        """
        Send one request and wait for the response with the same opcode.

        Responses to other opcodes (extra SYNC replies, stale answers) are
        skipped. Returns None on timeout.
        """
        self.link.send(slip_encode(build_request(op, data, checksum)), annotation)
        clock = self.link.clock
        start = clock()
        deadline = start + timeout
        while True:
            remaining = deadline - clock()
            if remaining <= 0:
                self.link.note(f"No response to op 0x{op:02X}", elapsed=clock() - start)
                return None
            raw = self.link.read_available(512, remaining, f"{annotation} reply")
            for frame in self.decoder.feed(raw):
                response = self._parse(frame)
                if response is None or response.op != op:
                    self.link.note("Skipped unrelated frame", data=frame)
                    continue
                return response

    def _attempt(self, op: int, *args, **kwargs):
        """
        command() for retry loops: an unreadable reply is noted and returned
        as (None, error) so the caller can flush and try again.
        """
        try:
            return self.command(op, *args, **kwargs), None
        except FramingError as e:
            self.link.note(f"Unreadable reply to op 0x{op:02X}: {e}")
            return None, e

    def _recover(self) -> None:
        self.link.flush(self.timing.flush_duration)
        self.decoder.reset()
        self.link.wait(self.timing.retry_delay, "retry delay")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def handshake(self) -> str:
        """
        Send SYNC until the ROM answers.

        Bytes the ROM prints while booting are noise here, so framing
        errors during sync only fail the attempt.
        """
        attempts = self.board.sync_attempts
        for attempt in range(1, attempts + 1):
            logger.debug(f"Sync attempt {attempt}/{attempts}")
            try:
                response = self.command(
                    ESP_SYNC, SYNC_PAYLOAD, timeout=self.timing.sync_window, annotation="sync"
                )
            except FramingError as e:
                self.link.note(f"Sync attempt {attempt}: {e}")
                response = None
            if response is not None and not response.failed:
                # The ROM answers one SYNC several times.
                self.link.flush(self.timing.flush_duration)
                self.decoder.reset()
                logger.info("ESP ROM loader in sync")
                return "ESP ROM loader"
            self._recover()

        raise HandshakeFailed(
            f"No reply to SYNC after {attempts} attempts",
            detail="hold BOOT (IO0) low while resetting, or check the auto-reset circuit",
        )

    def erase(self, image) -> AckResult:
        """FLASH_BEGIN: the ROM erases the target region before replying."""
        size = len(image.data)
        block_size = self.board.page_size
        blocks = math.ceil(size / block_size)
        payload = struct.pack("<IIII", size, blocks, block_size, self.board.flash_base)
        timeout = scaled_timeout(ERASE_TIMEOUT_PER_MB, size, self.timing.erase_timeout)
        logger.info(
            f"Flash begin: {size} bytes in {blocks} blocks at 0x{self.board.flash_base:X} "
            f"(erase timeout {timeout:.1f}s)"
        )

        retries = self.board.retries
        ack = None
        garbled = None
        for attempt in range(1, retries + 1):
            start = self.link.clock()
            response, garbled = self._attempt(
                ESP_FLASH_BEGIN, payload, timeout=timeout, annotation="flash begin"
            )
            elapsed = self.link.clock() - start
            if response is None:
                ack = AckResult.timed_out(elapsed=elapsed)
            elif response.failed:
                ack = AckResult.mismatched(response.status, elapsed)
                self.link.note(f"Flash begin rejected: {response.error_text()}")
            else:
                return AckResult.acknowledged(response.status, elapsed)
            logger.warning(f"Flash begin attempt {attempt}/{retries}: {ack.describe()}")
            if attempt < retries:
                self._recover()

        if garbled is not None:
            raise garbled
        raise EraseFailed(
            f"Flash begin not acknowledged after {retries} attempts ({ack.status.value})",
            ack=ack,
            detail=ack.describe(),
        )

    def program_chunk(self, chunk) -> None:
        """FLASH_DATA for one block; the last block is padded with 0xFF."""
        block = chunk.data.ljust(self.board.page_size, b"\xff")
        payload = struct.pack("<IIII", len(block), chunk.index, 0, 0) + block
        checksum = esp_checksum(block)

        retries = self.board.retries
        failure = ""
        garbled = None
        for attempt in range(1, retries + 1):
            self.attempts = attempt
            response, garbled = self._attempt(
                ESP_FLASH_DATA,
                payload,
                checksum=checksum,
                timeout=self.timing.write_timeout,
                annotation=f"flash data seq {chunk.index}",
            )
            if response is not None and not response.failed:
                return
            if garbled is not None:
                failure = str(garbled)
            else:
                failure = "timed out" if response is None else response.error_text()
            logger.warning(f"Block {chunk.index} attempt {attempt}/{retries}: {failure}")
            if attempt < retries:
                self._recover()

        if garbled is not None:
            raise garbled
        raise ProgramFailed(
            f"Block {chunk.index} at 0x{chunk.address:X} could not be written",
            chunk_index=chunk.index,
            detail=failure,
        )

    def verify(self, image) -> Optional[str]:
        """
        Compare the flash MD5 of the written region with the image MD5.

        The ROM reports the digest as 32 hex characters, the flasher stub as
        16 raw bytes; both are accepted.
        """
        if not self.board.verify_digest:
            self.link.note("Digest verification disabled for this board")
            return None

        size = len(image.data)
        expected = hashlib.md5(image.data).hexdigest()
        timeout = scaled_timeout(MD5_TIMEOUT_PER_MB, size, self.timing.verify_timeout)
        # Only unreadable frames are retried; a readable answer is final.
        retries = self.board.retries
        for attempt in range(1, retries + 1):
            response, garbled = self._attempt(
                ESP_SPI_FLASH_MD5,
                struct.pack("<IIII", self.board.flash_base, size, 0, 0),
                timeout=timeout,
                annotation="flash md5",
            )
            if garbled is None:
                break
            logger.warning(f"Flash MD5 attempt {attempt}/{retries}: {garbled}")
            if attempt == retries:
                raise garbled
            self._recover()

        if response is None:
            raise VerifyUnavailable("No reply to SPI_FLASH_MD5")
        if response.failed:
            raise VerifyUnavailable("SPI_FLASH_MD5 rejected", detail=response.error_text())

        if len(response.data) == 32:
            actual = response.data.decode("ascii", errors="replace").lower()
        elif len(response.data) == 16:
            actual = response.data.hex()
        else:
            raise VerifyUnavailable(
                f"Unexpected digest length {len(response.data)}",
                detail=response.data.hex(" ").upper(),
            )

        logger.info(f"Flash MD5: {actual}, expected: {expected}")
        if actual != expected:
            self.link.note("MD5 mismatch", expected=expected, received=actual)
            raise VerifyMismatch(
                "Flash digest differs from image",
                expected_crc=expected,
                actual_crc=actual,
            )
        return actual

    def finalize(self) -> None:
        self.link.flush(self.timing.flush_duration)
        self.decoder.reset()

    def execute(self) -> None:
        """
        FLASH_END. With reboot the ROM may restart before replying, so the
        reply is only required when staying in the loader.
        """
        reboot = self.board.reboot_after_upload
        try:
            response = self.command(
                ESP_FLASH_END,
                struct.pack("<I", int(not reboot)),
                timeout=self.timing.command_timeout,
                annotation="flash end" + (" (reboot)" if reboot else ""),
            )
        except FramingError as e:
            if not reboot:
                raise
            response = None
            self.link.note(f"Flash end reply unreadable: {e}")

        if response is None:
            if reboot:
                logger.info("No reply to FLASH_END (chip rebooting)")
                return
            raise UploadTimeout("No reply to FLASH_END", stage=Stage.EXECUTE)
        if response.failed:
            raise UploadError("FLASH_END rejected", stage=Stage.EXECUTE, detail=response.error_text())

    def reset(self) -> None:
        """Best-effort FLASH_END with reboot, used when an upload is abandoned."""
        try:
            self.link.send(
                slip_encode(build_request(ESP_FLASH_END, struct.pack("<I", 0))),
                "flash end (reboot)",
            )
        except TransportError as e:
            logger.warning(f"Reset not sent: {e}")
