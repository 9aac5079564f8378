"""
SAM-BA / BOSSA extended protocol engine.

ASCII commands terminated by '#', hex arguments as 8 lower-case digits:

    N#                  Switch to binary ("normal") mode, reply "\\n\\r" (often absent)
    V#                  Version string, terminated by CR/LF
    I#                  Info string (optional)
    X<addr>#            Erase flash from addr, ACK "X\\n\\r"
    S<addr>,<size>#     Followed by <size> raw bytes into the SRAM buffer
    Y<src>,0#           Set buffer-to-flash copy source, ACK "Y\\n\\r"
    Y<dst>,<size>#      Copy <size> bytes from the source to flash, ACK "Y\\n\\r"
    Z<addr>,<size>#     CRC16 of a flash range, reply "Z<crc:08X>#"
    W<addr>,<value>#    Write a 32-bit word
    G<addr>#            Jump to addr
    K#                  System reset

There is no flow control: after raw data the host waits for the bytes to
leave the wire before sending the next command.
"""

import logging
import re
from typing import List, Optional

from board_flasher.protocol.base import AckPolicy, AckResult, LinkIO
from board_flasher.protocol.errors import (
    EraseFailed,
    HandshakeFailed,
    ProgramFailed,
    TransportError,
    VerifyMismatch,
    VerifyUnavailable,
)
from board_flasher.protocol.framing import (
    crc16_ccitt,
    printable_ascii,
    samba_command,
    transmission_delay,
)

logger = logging.getLogger(__name__)

LINE_TERMINATORS = b"\r\n"

# Raw payloads are written in bounded pieces rather than one large write.
PIECE_SIZE = 512

# ACK replies are a letter plus CR/LF; anything longer is noise.
ACK_MAX_BYTES = 16

# Pause after N# before asking for the version.
MODE_SETTLE = 0.2
# Pause between the two Y# steps and after each W#.
COMMAND_GAP = 0.002
# Pause before the Z# CRC request so the last copy has committed.
VERIFY_SETTLE = 0.1

ASSUMED_VERSION = "ASSUMED:Arduino Bootloader"

_CRC_REPLY = re.compile(rb"Z([0-9A-Fa-f]{8})#")


class SamBaEngine:
    """
    SAM-BA engine for ARM boards (Renesas RA4M1, SAMD21).

    Each chunk is staged in the bootloader's SRAM buffer with S#, then
    copied to flash with the two-step Y# command. The whole image is
    checked once at the end with the device-side Z# CRC.

    Example:
        engine = SamBaEngine(LinkIO(channel, log), board)
        engine.handshake()
        engine.erase(image)
        for chunk in chunk_image(image, board.page_size, board.flash_base):
            engine.program_chunk(chunk)
        engine.verify(image)
        engine.finalize()
        engine.execute()
    """

    name = "SAM-BA"
    VERIFY_PER_CHUNK = False

    @classmethod
    def address_limit(cls, board) -> int:
        """Addresses are sent as 8 hex digits."""
        return 1 << 32

    def __init__(self, link: LinkIO, board):
        self.link = link
        self.board = board
        self.timing = board.timing
        self.version: Optional[str] = None
        self.info: Optional[str] = None
        self.is_arduino_variant = False
        self.warnings: List[str] = []
        self.attempts = 0

    # ------------------------------------------------------------------
    # Reply handling
    # ------------------------------------------------------------------

    def _read_line(self, timeout: float, max_bytes: int, annotation: str) -> bytes:
        """Read one reply line, skipping terminators left over from the previous reply."""
        clock = self.link.clock
        deadline = clock() + timeout
        collected = b""
        while len(collected) < max_bytes:
            remaining = deadline - clock()
            if remaining <= 0:
                break
            chunk = self.link.read_until(
                LINE_TERMINATORS, remaining, max_bytes - len(collected), annotation
            )
            if not chunk:
                break
            collected += chunk
            if printable_ascii(collected):
                break
        return collected

    def _await_ack(self, command: bytes, timeout: float) -> AckResult:
        """
        Wait for a command's leading byte to be echoed before a line terminator.

        Returns:
            AckResult: acknowledged, mismatched (other bytes arrived) or
            timed out (nothing but leftover terminators arrived)
        """
        expected = command[:1]
        clock = self.link.clock
        start = clock()
        deadline = start + timeout
        collected = b""
        while len(collected) < ACK_MAX_BYTES:
            remaining = deadline - clock()
            if remaining <= 0:
                break
            chunk = self.link.read_until(
                LINE_TERMINATORS,
                remaining,
                ACK_MAX_BYTES - len(collected),
                f"{command.decode('ascii')} ACK",
            )
            if not chunk:
                break
            collected += chunk
            body = collected.lstrip(LINE_TERMINATORS)
            if body and any(t in body for t in LINE_TERMINATORS):
                break

        elapsed = clock() - start
        body = collected.lstrip(LINE_TERMINATORS)
        line = re.split(rb"[\r\n]", body, maxsplit=1)[0]
        if not body:
            return AckResult.timed_out(collected, elapsed)
        if expected in line:
            return AckResult.acknowledged(collected, elapsed)
        return AckResult.mismatched(collected, elapsed)

    def _record_ack_failure(self, command: bytes, ack: AckResult) -> None:
        self.link.note(
            f"{command.decode('ascii')} {ack.status.value}",
            expected=command[:1],
            received=ack.received,
            elapsed=ack.elapsed,
        )

    def _recover(self) -> None:
        """Discard stale input and pause before the next attempt."""
        self.link.flush(self.timing.flush_duration)
        self.link.wait(self.timing.retry_delay, "retry delay")

    # ------------------------------------------------------------------
    # Low-level commands
    # ------------------------------------------------------------------

    def write_buffer(self, address: int, data: bytes) -> None:
        """
        Stage raw bytes in bootloader SRAM with S#.

        The target has no flow control, so after the payload we wait for
        the computed transmission time before the next command.
        """
        command = samba_command("S", address, len(data))
        self.link.send(command, f"stage {len(data)} bytes at buffer 0x{address:08X}")
        self.link.wait(self.timing.settle_delay, "settle before raw payload")
        self.link.send_in_pieces(data, PIECE_SIZE)
        self.link.wait(
            transmission_delay(len(data), self.board.baud_rate, self.timing.transmit_margin),
            "payload transmission time",
        )

    def write_word(self, address: int, value: int) -> None:
        """Write a 32-bit word with W# (no ACK)."""
        self.link.send(samba_command("W", address, value), f"word 0x{value:08X} -> 0x{address:08X}")
        self.link.wait(COMMAND_GAP)

    def _preload_applet(self) -> None:
        applet = self.board.applet
        if applet is None:
            return
        logger.info(f"Uploading {len(applet.code)}-byte flash applet")
        self.write_buffer(applet.buffer_offset, applet.code)
        for address, value in applet.register_writes:
            self.write_word(address, value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def handshake(self) -> str:
        """
        N# / V# / I# handshake.

        Returns:
            Bootloader version string (or ASSUMED_VERSION when the board
            permits proceeding without one)

        Raises:
            HandshakeFailed: If no version string arrives after all attempts
        """
        t = self.timing
        attempts = self.board.handshake_attempts
        last_reply = b""

        for attempt in range(1, attempts + 1):
            logger.info(f"SAM-BA handshake attempt {attempt}/{attempts}")
            self.link.send(b"N#", "set binary mode")
            if not self.link.read_until(LINE_TERMINATORS, t.handshake_ack_timeout, 16, "N# reply"):
                logger.warning("No reply to N# (some bootloaders omit it)")
                self.link.note("N# reply absent, tolerated")
            self.link.wait(MODE_SETTLE, "mode switch")

            self.link.send(b"V#", "request version")
            reply = self._read_line(t.version_timeout, 256, "version string")
            version = printable_ascii(reply)
            if version:
                self.version = version
                self.is_arduino_variant = "Arduino" in version
                logger.info(f"Bootloader version: {version}")
                self._query_info()
                return version

            last_reply = reply
            self.link.note(
                f"Handshake attempt {attempt} failed: no version string",
                received=reply,
            )
            logger.warning(f"Handshake attempt {attempt} failed: no version string")
            if attempt < attempts:
                self._recover()

        if self.board.proceed_on_handshake_failure:
            message = "Proceeding without bootloader version (handshake unconfirmed)"
            logger.warning(message)
            self.warnings.append(message)
            self.link.note(message)
            self.version = ASSUMED_VERSION
            return ASSUMED_VERSION

        raise HandshakeFailed(
            f"No version string from bootloader after {attempts} attempts",
            detail=f"last reply [{last_reply.hex(' ').upper() or '<empty>'}]",
        )

    def _query_info(self) -> None:
        """Best-effort I# query; never fails the handshake."""
        self.link.wait(0.025)
        self.link.send(b"I#", "request info")
        info = printable_ascii(self._read_line(0.5, 64, "info string"))
        if info:
            self.info = info
            logger.info(f"Bootloader info: {info}")

    def erase(self, image) -> AckResult:
        """
        Erase flash from the board's flash base.

        Raises:
            EraseFailed: If the X# ACK times out or mismatches on every attempt.
                `ack.status` tells the two apart.
        """
        self._preload_applet()

        command = samba_command("X", self.board.flash_base)
        retries = self.board.retries
        ack = None
        for attempt in range(1, retries + 1):
            logger.info(f"Erasing flash from 0x{self.board.flash_base:08X}")
            self.link.send(command, "erase")
            ack = self._await_ack(command, self.timing.erase_timeout)
            if ack:
                logger.info(f"Erase {ack.describe()}")
                return ack
            self._record_ack_failure(command, ack)
            logger.warning(f"Erase attempt {attempt}/{retries}: {ack.describe()}")
            if attempt < retries:
                self._recover()

        raise EraseFailed(
            f"Erase not acknowledged after {retries} attempts ({ack.status.value})",
            ack=ack,
            detail=ack.describe(),
        )

    def program_chunk(self, chunk) -> None:
        """
        Stage one chunk in SRAM and copy it to flash.

        The copy-source step always needs its ACK. The copy itself follows
        `board.copy_ack_policy`.

        Raises:
            ProgramFailed: If a required ACK fails on every attempt
        """
        t = self.timing
        buffer = self.board.sram_buffer
        size = len(chunk.data)
        source_cmd = samba_command("Y", buffer, 0)
        copy_cmd = samba_command("Y", chunk.address, size)
        retries = self.board.retries
        failure = ""

        for attempt in range(1, retries + 1):
            self.attempts = attempt
            self.write_buffer(buffer, chunk.data)

            self.link.send(source_cmd, "set copy source")
            ack = self._await_ack(source_cmd, t.command_timeout)
            if not ack:
                self._record_ack_failure(source_cmd, ack)
                failure = f"copy source {ack.describe()}"
                logger.warning(f"Chunk {chunk.index} attempt {attempt}/{retries}: {failure}")
                if attempt < retries:
                    self._recover()
                continue

            self.link.wait(COMMAND_GAP)
            self.link.send(copy_cmd, f"copy {size} bytes to flash 0x{chunk.address:08X}")
            ack = self._await_ack(copy_cmd, t.write_timeout)
            if not ack:
                self._record_ack_failure(copy_cmd, ack)
                if self.board.copy_ack_policy is AckPolicy.REQUIRED:
                    failure = f"flash copy {ack.describe()}"
                    logger.warning(f"Chunk {chunk.index} attempt {attempt}/{retries}: {failure}")
                    if attempt < retries:
                        self._recover()
                    continue
                message = (
                    f"Chunk {chunk.index}: flash copy {ack.describe()}; continuing "
                    "(unverified bootloader behaviour, device CRC decides)"
                )
                logger.warning(message)
                self.warnings.append(message)

            self.link.wait(t.inter_chunk_delay, "flash page commit")
            return

        raise ProgramFailed(
            f"Chunk {chunk.index} at 0x{chunk.address:08X} failed after {retries} attempts",
            chunk_index=chunk.index,
            detail=failure,
        )

    def verify(self, image) -> int:
        """
        Compare the device CRC of the written range with the image CRC.

        Returns:
            The matching CRC

        Raises:
            VerifyMismatch: Device CRC differs
            VerifyUnavailable: Reply missing or malformed
        """
        size = len(image.data)
        command = samba_command("Z", self.board.flash_base, size)
        expected = crc16_ccitt(image.data)

        self.link.wait(VERIFY_SETTLE, "flash commit before CRC")
        self.link.flush(self.timing.flush_duration)
        self.link.send(command, f"CRC of {size} bytes")
        reply = self.link.read_until(b"#", self.timing.verify_timeout, 32, "device CRC")

        match = _CRC_REPLY.search(reply)
        if not match:
            self.link.note("CRC reply missing or malformed", received=reply)
            raise VerifyUnavailable(
                "Device did not report a CRC",
                detail=f"received [{reply.hex(' ').upper() or '<empty>'}]",
            )

        actual = int(match.group(1), 16)
        logger.info(f"Flash CRC: 0x{actual:04X}, expected: 0x{expected:04X}")
        if actual != expected:
            self.link.note("CRC mismatch", expected=f"0x{expected:04X}", received=f"0x{actual:04X}")
            raise VerifyMismatch(
                f"Device CRC 0x{actual:04X} != image CRC 0x{expected:04X}",
                expected_crc=expected,
                actual_crc=actual,
            )
        return actual

    def finalize(self) -> None:
        self.link.flush(self.timing.flush_duration)

    def execute(self) -> None:
        """Start the application. The target resets before it can answer."""
        entry = self.board.entry_address
        if self.board.jump_to_entry and entry is not None:
            self.link.send(samba_command("G", entry), f"jump to 0x{entry:08X}")
        else:
            self.link.send(b"K#", "system reset")

    def reset(self) -> None:
        """Best-effort K#, used when an upload is abandoned."""
        try:
            self.link.flush(self.timing.flush_duration)
            self.link.send(b"K#", "system reset")
        except TransportError as e:
            logger.warning(f"Reset not sent: {e}")
