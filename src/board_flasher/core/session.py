"""
Mutable state of one upload attempt.

Owned by the orchestrator for the duration of a single upload() call and
never shared between uploads.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from board_flasher.exchange_log import ExchangeLog
from board_flasher.protocol.errors import Stage


@dataclass
class UploadSession:
    """
    Attributes:
        total_bytes: Image size
        started_at: Clock reading when the upload started
        clock: Monotonic clock shared with the engine
        log: Exchange log for this upload
        stage: Stage currently running
        chunk_index: Index of the chunk being programmed (-1 before the first)
        bytes_written: Bytes of committed chunks
        chunk_attempts: Engine attempts spent on each chunk index
    """
    total_bytes: int
    clock: Callable[[], float]
    log: ExchangeLog
    started_at: float = 0.0
    stage: Optional[Stage] = None
    chunk_index: int = -1
    bytes_written: int = 0
    chunk_attempts: Dict[int, int] = field(default_factory=dict)

    def __post_init__(self):
        if not self.started_at:
            self.started_at = self.clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def enter(self, stage: Stage) -> None:
        self.stage = stage
        self.log.note(f"Stage: {stage.value}")

    def begin_chunk(self, index: int) -> None:
        self.chunk_index = index

    def record_attempts(self, index: int, attempts: int) -> None:
        self.chunk_attempts[index] = attempts

    @property
    def retried_chunks(self) -> Dict[int, int]:
        """Chunk index -> attempts, for chunks that needed more than one."""
        return {i: n for i, n in self.chunk_attempts.items() if n > 1}

    def commit_chunk(self, size: int) -> None:
        self.bytes_written += size
