"""
Result object for an upload.

Provides one result structure that the CLI (and any other caller) can use
to display the outcome consistently, whether the upload succeeded or
failed.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from board_flasher.exchange_log import Exchange
from board_flasher.protocol.errors import Stage, UploadError


@dataclass
class UploadResult:
    """
    Terminal value of one upload.

    Attributes:
        ok: Whether the upload completed successfully
        board: Board name
        bytes_written: Bytes programmed (all of the image on success)
        duration: Seconds from start to result
        stage: Stage that failed (None on success)
        reason: Failure message
        needs_manual_reset: Recoverability hint (a physical reset may be enough)
        error: The UploadError that ended the upload, if any
        warnings: Non-blocking issues encountered
        last_exchanges: Last protocol exchanges before the result
        metadata: Engine-specific details (bootloader version, CRC, digest)
    """
    ok: bool
    board: str = ""
    bytes_written: int = 0
    duration: float = 0.0
    stage: Optional[Stage] = None
    reason: str = ""
    needs_manual_reset: bool = False
    error: Optional[UploadError] = None
    warnings: List[str] = field(default_factory=list)
    last_exchanges: List[Exchange] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_summary(self) -> str:
        """Human-readable summary for CLI output or logs."""
        if self.ok:
            lines = [f"[SUCCESS] upload {self.board}".rstrip()]
        else:
            lines = [f"[FAILED] upload {self.board} at {self.stage.value if self.stage else '?'}"]
            lines.append(f"  Reason: {self.reason}")
            if self.error is not None and self.error.detail:
                lines.append(f"  Detail: {self.error.detail}")
            if self.needs_manual_reset:
                lines.append("  Press the board's reset button (double-tap for native USB boards) and retry")

        lines.append(f"  Bytes written: {self.bytes_written:,}")
        lines.append(f"  Duration: {self.duration:.2f}s")
        for name, value in self.metadata.items():
            lines.append(f"  {name}: {value}")

        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if not self.ok and self.last_exchanges:
            lines.append("  Last exchanges:")
            for entry in self.last_exchanges:
                lines.append(f"    {entry.to_line()}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "board": self.board,
            "bytes_written": self.bytes_written,
            "duration": round(self.duration, 3),
            "stage": self.stage.value if self.stage else None,
            "reason": self.reason,
            "needs_manual_reset": self.needs_manual_reset,
            "warnings": self.warnings,
            "last_exchanges": [entry.to_dict() for entry in self.last_exchanges],
            "metadata": self.metadata,
        }

    @classmethod
    def success(
        cls,
        board: str = "",
        bytes_written: int = 0,
        duration: float = 0.0,
        **kwargs,
    ) -> "UploadResult":
        """Create a successful result."""
        return cls(ok=True, board=board, bytes_written=bytes_written, duration=duration, **kwargs)

    @classmethod
    def failure(
        cls,
        error: UploadError,
        board: str = "",
        **kwargs,
    ) -> "UploadResult":
        """Create a failed result from the error that ended the upload."""
        return cls(
            ok=False,
            board=board,
            stage=error.stage,
            reason=str(error),
            needs_manual_reset=error.needs_manual_reset,
            error=error,
            **kwargs,
        )
