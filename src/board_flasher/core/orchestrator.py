"""
Upload orchestration.

Drives one engine through handshake, erase, program, verify, finalize and
execute for a firmware image, and turns the outcome into an UploadResult.
This is the only place engine exceptions are converted into results.
"""

import logging
import threading
import time
from typing import Callable, Optional

from board_flasher.core.results import UploadResult
from board_flasher.core.session import UploadSession
from board_flasher.core.strategy import select_engine
from board_flasher.exchange_log import ExchangeLog
from board_flasher.firmware import FirmwareImage, chunk_image
from board_flasher.protocol.base import LinkIO
from board_flasher.protocol.errors import Cancelled, Stage, TransportError, UploadError

logger = logging.getLogger(__name__)

# (bytes_done, bytes_total, elapsed_seconds)
ProgressCallback = Callable[[int, int, float], None]

# Exchanges attached to a failed result.
FAILURE_CONTEXT = 8


def _check_image(image: FirmwareImage, board, engine_class) -> None:
    if not image.size:
        raise UploadError("Firmware image is empty", stage=Stage.CONFIGURATION)
    if board.flash_size is not None and image.size > board.flash_size:
        raise UploadError(
            f"Image of {image.size} bytes does not fit {board.name} "
            f"application flash ({board.flash_size} bytes)",
            stage=Stage.CONFIGURATION,
        )
    end = board.flash_base + image.size
    limit = engine_class.address_limit(board)
    if end > limit:
        raise UploadError(
            f"Image ends at 0x{end:X}, beyond the 0x{limit:X} address range of {engine_class.name}",
            stage=Stage.CONFIGURATION,
        )


def upload(
    image: FirmwareImage,
    board,
    channel,
    on_progress: Optional[ProgressCallback] = None,
    *,
    cancel: Optional[threading.Event] = None,
    log: Optional[ExchangeLog] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> UploadResult:
    """
    Upload a firmware image to a board over an open channel.

    The channel is used exclusively by this call until it returns. Chunks
    are programmed in ascending address order. Any stage failure ends the
    upload; engines retry internally, the orchestrator never does.

    Args:
        image: Firmware to write
        board: BoardDescriptor of the target
        channel: Open byte channel (see protocol.transport.ByteChannel)
        on_progress: Called after each committed chunk
        cancel: Checked between chunks; when set, the current chunk is
            finished, a best-effort reset is sent and the result is Cancelled
        log: Exchange log to record into (a new one by default)
        clock: Monotonic clock in seconds
        sleep: Sleep function in seconds

    Returns:
        UploadResult
    """
    log = log if log is not None else ExchangeLog(clock=clock)
    session = UploadSession(total_bytes=image.size, clock=clock, log=log)
    session.enter(Stage.CONFIGURATION)

    try:
        engine_class = select_engine(board.family)
        _check_image(image, board, engine_class)
    except UploadError as e:
        return _failed(e, session, board, engine=None)

    engine = engine_class(LinkIO(channel, log, clock=clock, sleep=sleep), board)
    chunks = chunk_image(image, board.page_size, board.flash_base)
    metadata = {"engine": engine.name, "chunks": len(chunks)}
    logger.info(
        f"Uploading {image.size} bytes to {board.name} ({engine.name}) "
        f"in {len(chunks)} chunks of up to {board.page_size} bytes"
    )

    def check_cancel() -> None:
        if cancel is not None and cancel.is_set():
            raise Cancelled(
                f"Upload cancelled after {session.bytes_written} of {image.size} bytes"
            )

    try:
        session.enter(Stage.HANDSHAKE)
        metadata["bootloader"] = engine.handshake()
        check_cancel()

        session.enter(Stage.ERASE)
        engine.erase(image)

        session.enter(Stage.PROGRAM)
        for chunk in chunks:
            check_cancel()
            session.begin_chunk(chunk.index)
            try:
                engine.program_chunk(chunk)
            finally:
                session.record_attempts(chunk.index, engine.attempts)
            if engine.VERIFY_PER_CHUNK:
                engine.verify_chunk(chunk)
            session.commit_chunk(len(chunk.data))
            logger.debug(
                f"Chunk {chunk.index + 1}/{len(chunks)} committed at 0x{chunk.address:08X}"
            )
            if on_progress is not None:
                on_progress(session.bytes_written, image.size, session.elapsed)

        if not engine.VERIFY_PER_CHUNK:
            session.enter(Stage.VERIFY)
            check_value = engine.verify(image)
            if check_value is not None:
                metadata["device_check"] = (
                    f"0x{check_value:04X}" if isinstance(check_value, int) else check_value
                )

        session.enter(Stage.FINALIZE)
        engine.finalize()

        session.enter(Stage.EXECUTE)
        engine.execute()

    except Cancelled as e:
        logger.warning(str(e))
        engine.reset()
        return _failed(e, session, board, engine, metadata)
    except UploadError as e:
        return _failed(e, session, board, engine, metadata)
    except OSError as e:
        # Channels other than SerialChannel may raise their own I/O errors.
        return _failed(TransportError(str(e)), session, board, engine, metadata)

    if session.retried_chunks:
        metadata["retried_chunks"] = session.retried_chunks
    duration = session.elapsed
    logger.info(f"Upload complete: {session.bytes_written} bytes in {duration:.2f}s")
    return UploadResult.success(
        board=board.name,
        bytes_written=session.bytes_written,
        duration=duration,
        warnings=list(engine.warnings),
        metadata=metadata,
    )


def _failed(error: UploadError, session: UploadSession, board, engine, metadata=None) -> UploadResult:
    if error.stage is None:
        error.stage = session.stage
    last_exchanges = session.log.tail(FAILURE_CONTEXT)
    session.log.note(
        f"Failed at {error.stage.value}: {error}",
        detail=error.detail,
        elapsed=session.elapsed,
    )
    logger.error(f"Upload failed at {error.stage.value}: {error}")
    if error.detail:
        logger.error(f"  {error.detail}")
    metadata = dict(metadata or {})
    if session.retried_chunks:
        metadata["retried_chunks"] = session.retried_chunks

    return UploadResult.failure(
        error,
        board=board.name,
        bytes_written=session.bytes_written,
        duration=session.elapsed,
        warnings=list(engine.warnings) if engine is not None else [],
        last_exchanges=last_exchanges,
        metadata=metadata,
    )
