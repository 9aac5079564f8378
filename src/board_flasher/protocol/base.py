"""
Shared vocabulary for bootloader protocol engines.

Every engine drives the same lifecycle (handshake, erase, program, verify,
finalize, execute) over a byte channel. This module holds the pieces they
have in common:

- Acknowledgement outcomes and per-command ACK policies
- LinkIO, the bounded-wait read/write helper each engine composes
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from board_flasher.exchange_log import ExchangeLog
from board_flasher.protocol.errors import TransportError

logger = logging.getLogger(__name__)


class AckStatus(Enum):
    """Outcome of waiting for an acknowledgement."""
    ACKNOWLEDGED = "acknowledged"
    MISMATCHED = "mismatched"
    TIMED_OUT = "timed_out"


class AckPolicy(Enum):
    """How an engine treats a missing or wrong acknowledgement."""
    REQUIRED = "required"        # failure aborts the stage (after retries)
    BEST_EFFORT = "best_effort"  # failure is logged as a warning only


@dataclass(frozen=True)
class AckResult:
    """
    Acknowledgement outcome.

    Attributes:
        status: Acknowledged, mismatched or timed out
        received: Bytes actually received while waiting
        elapsed: Seconds spent waiting
    """
    status: AckStatus
    received: bytes = b""
    elapsed: float = 0.0

    @classmethod
    def acknowledged(cls, received: bytes = b"", elapsed: float = 0.0) -> "AckResult":
        return cls(AckStatus.ACKNOWLEDGED, received, elapsed)

    @classmethod
    def mismatched(cls, received: bytes, elapsed: float = 0.0) -> "AckResult":
        return cls(AckStatus.MISMATCHED, received, elapsed)

    @classmethod
    def timed_out(cls, received: bytes = b"", elapsed: float = 0.0) -> "AckResult":
        return cls(AckStatus.TIMED_OUT, received, elapsed)

    @property
    def ok(self) -> bool:
        return self.status is AckStatus.ACKNOWLEDGED

    def __bool__(self) -> bool:
        return self.ok

    def describe(self) -> str:
        """Short human-readable description for logs and errors."""
        if self.status is AckStatus.ACKNOWLEDGED:
            return f"acknowledged in {self.elapsed * 1000:.0f}ms"
        if self.status is AckStatus.MISMATCHED:
            return (
                f"mismatch after {self.elapsed * 1000:.0f}ms: "
                f"received [{self.received.hex(' ').upper() or '<empty>'}]"
            )
        return f"timed out after {self.elapsed * 1000:.0f}ms"


class LinkIO:
    """
    Bounded-wait I/O over a byte channel, with every exchange recorded.

    Reads are raced against a deadline taken from the injected clock: a read
    never blocks past its timeout, and an empty result is returned rather than
    raised. Short writes are transport errors.

    Args:
        channel: Open duplex byte channel (see transport.ByteChannel)
        log: Exchange log receiving TX/RX/NOTE entries
        clock: Monotonic clock in seconds
        sleep: Sleep function in seconds
    """

    # Upper bound on a single read slice so deadlines are re-checked often.
    READ_SLICE = 0.05

    def __init__(
        self,
        channel,
        log: ExchangeLog,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.channel = channel
        self.log = log
        self.clock = clock
        self.sleep = sleep

    def send(self, data: bytes, annotation: str = "") -> None:
        """Write all of data or raise TransportError."""
        written = self.channel.write(data)
        if written != len(data):
            self.log.note(
                f"Incomplete write: sent {written}/{len(data)} bytes",
                data=data,
            )
            raise TransportError(f"Incomplete write: sent {written}/{len(data)} bytes")
        self.log.tx(data, annotation)

    def send_in_pieces(self, data: bytes, piece_size: int, annotation: str = "") -> None:
        """Write data as a series of bounded sub-writes."""
        if piece_size <= 0:
            raise ValueError("piece_size must be > 0")
        for offset in range(0, len(data), piece_size):
            piece = data[offset:offset + piece_size]
            written = self.channel.write(piece)
            if written != len(piece):
                raise TransportError(
                    f"Incomplete write at payload offset {offset}: "
                    f"sent {written}/{len(piece)} bytes"
                )
        self.log.tx(data, annotation or f"{len(data)} raw bytes in {piece_size}-byte pieces")

    def read_until(
        self,
        terminators: Iterable[int],
        timeout: float,
        max_bytes: int = 256,
        annotation: str = "",
    ) -> bytes:
        """
        Collect bytes until a terminator byte arrives, max_bytes are
        collected, or the timeout elapses. Returns whatever was collected.
        """
        stops = set(terminators)
        collected = bytearray()
        start = self.clock()
        deadline = start + timeout
        while len(collected) < max_bytes:
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            chunk = self.channel.read(max_bytes - len(collected), min(remaining, self.READ_SLICE))
            if not chunk:
                continue
            collected.extend(chunk)
            if any(b in stops for b in chunk):
                break
        data = bytes(collected)
        if data:
            self.log.rx(data, annotation, elapsed=self.clock() - start)
        return data

    def read_exact(self, count: int, timeout: float, annotation: str = "") -> bytes:
        """Read count bytes or return the short result once the timeout elapses."""
        collected = bytearray()
        start = self.clock()
        deadline = start + timeout
        while len(collected) < count:
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            chunk = self.channel.read(count - len(collected), min(remaining, self.READ_SLICE))
            if chunk:
                collected.extend(chunk)
        data = bytes(collected)
        if data:
            self.log.rx(data, annotation, elapsed=self.clock() - start)
        return data

    def read_available(self, max_bytes: int, timeout: float, annotation: str = "") -> bytes:
        """Return the first non-empty read within timeout (possibly short)."""
        start = self.clock()
        deadline = start + timeout
        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                return b""
            chunk = self.channel.read(max_bytes, min(remaining, self.READ_SLICE))
            if chunk:
                self.log.rx(chunk, annotation, elapsed=self.clock() - start)
                return chunk

    def flush(self, duration: float) -> int:
        """Discard inbound bytes for up to duration seconds."""
        discarded = self.channel.flush(duration)
        if discarded:
            self.log.note(f"Flushed {discarded} stray byte{'s' if discarded != 1 else ''}")
            logger.info("Flushed %d stray bytes from serial buffer", discarded)
        return discarded

    def wait(self, seconds: float, reason: Optional[str] = None) -> None:
        if seconds <= 0:
            return
        if reason:
            logger.debug("Wait %.0fms: %s", seconds * 1000, reason)
        self.sleep(seconds)

    def note(self, message: str, **context) -> None:
        self.log.note(message, **context)
