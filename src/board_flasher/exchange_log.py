"""
Chronological record of protocol exchanges for one upload.

Each entry keeps the raw bytes, a human annotation and timing so that a
failed upload can be compared against known-good captures of the same
protocol without re-running hardware.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

TX = "TX"
RX = "RX"
NOTE = "NOTE"


def bytes_to_ascii(data: bytes, max_bytes: int = 64) -> str:
    """Render bytes as ASCII with <CR>/<LF>/<NUL>/<xx> notation."""
    out = []
    for b in data[:max_bytes]:
        if b == 0x0A:
            out.append("<LF>")
        elif b == 0x0D:
            out.append("<CR>")
        elif b == 0x00:
            out.append("<NUL>")
        elif 0x20 <= b <= 0x7E:
            out.append(chr(b))
        else:
            out.append(f"<{b:02x}>")
    text = "".join(out)
    if len(data) > max_bytes:
        text += f"... (+{len(data) - max_bytes} more)"
    return text


def bytes_to_hex(data: bytes, max_bytes: int = 32) -> str:
    """Render bytes as spaced upper-case hex, truncated after max_bytes."""
    if not data:
        return "(empty)"
    text = data[:max_bytes].hex(" ").upper()
    if len(data) > max_bytes:
        text += f"... (+{len(data) - max_bytes} more)"
    return text


@dataclass(frozen=True)
class Exchange:
    """
    Single log entry.

    Attributes:
        direction: TX, RX or NOTE
        data: Raw bytes sent or received (empty for most notes)
        annotation: What the bytes mean
        timestamp: Seconds since the log was created
        elapsed: Seconds spent waiting for an RX, if known
        context: Extra diagnostic fields (expected/received bytes, etc.)
    """
    direction: str
    data: bytes
    annotation: str
    timestamp: float
    elapsed: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_line(self) -> str:
        parts = [f"+{self.timestamp:8.3f}s", f"{self.direction:<4}"]
        if self.data:
            parts.append(bytes_to_hex(self.data))
            parts.append(f"|{bytes_to_ascii(self.data)}|")
        if self.annotation:
            parts.append(self.annotation)
        if self.elapsed is not None:
            parts.append(f"({self.elapsed * 1000:.0f}ms)")
        for key, value in self.context.items():
            if isinstance(value, (bytes, bytearray)):
                value = bytes_to_hex(bytes(value))
            parts.append(f"{key}={value}")
        return "  ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction,
            "data": self.data.hex(),
            "annotation": self.annotation,
            "timestamp": round(self.timestamp, 6),
            "elapsed": None if self.elapsed is None else round(self.elapsed, 6),
            "context": {
                k: (v.hex() if isinstance(v, (bytes, bytearray)) else v)
                for k, v in self.context.items()
            },
        }


class ExchangeLog:
    """
    Append-only exchange log with an optional live listener.

    Args:
        clock: Monotonic clock used for timestamps
        listener: Called with every new Exchange (e.g. live CLI tracing)
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        listener: Optional[Callable[[Exchange], None]] = None,
    ):
        self._clock = clock
        self._origin = clock()
        self._entries: List[Exchange] = []
        self.listener = listener

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    @property
    def entries(self) -> List[Exchange]:
        return list(self._entries)

    def _append(self, entry: Exchange) -> Exchange:
        self._entries.append(entry)
        if self.listener is not None:
            self.listener(entry)
        return entry

    def _now(self) -> float:
        return self._clock() - self._origin

    def tx(self, data: bytes, annotation: str = "") -> Exchange:
        logger.debug(">>> %s", data.hex().upper())
        return self._append(Exchange(TX, bytes(data), annotation, self._now()))

    def rx(self, data: bytes, annotation: str = "", elapsed: Optional[float] = None) -> Exchange:
        logger.debug("<<< %s", data.hex().upper())
        return self._append(Exchange(RX, bytes(data), annotation, self._now(), elapsed))

    def note(self, annotation: str, *, data: bytes = b"", elapsed: Optional[float] = None, **context) -> Exchange:
        return self._append(Exchange(NOTE, bytes(data), annotation, self._now(), elapsed, dict(context)))

    def tail(self, count: int = 8) -> List[Exchange]:
        """Return the last count entries."""
        if count <= 0:
            return []
        return list(self._entries[-count:])

    def to_lines(self) -> List[str]:
        return [entry.to_line() for entry in self._entries]
