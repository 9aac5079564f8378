"""Tests for upload orchestration over simulated bootloaders."""

import dataclasses
import hashlib
import threading

import pytest

from board_flasher.core.orchestrator import FAILURE_CONTEXT, upload
from board_flasher.exchange_log import ExchangeLog
from board_flasher.firmware import FirmwareImage
from board_flasher.models import get_board
from board_flasher.protocol.base import AckStatus
from board_flasher.protocol.errors import Stage, TransportError, UnsupportedProtocol
from board_flasher.protocol.esptool import ESP_FLASH_DATA
from board_flasher.protocol.framing import crc16_ccitt

from simulators import EspRomSimulator, SamBaSimulator, SilentDevice, Stk500Simulator


@pytest.fixture
def samd():
    return get_board("mkr1000")


def _image(size: int) -> FirmwareImage:
    return FirmwareImage(bytes((i * 31 + 7) & 0xFF for i in range(size)), name="sketch.bin")


def _run(channel, clock, image, board, **kwargs):
    return upload(image, board, channel, clock=clock.time, sleep=clock.sleep, **kwargs)


class TestSamBaUpload:
    """Full lifecycle against a SAM-BA bootloader."""

    def test_5000_byte_image_in_two_chunks(self, make_channel, clock, samd) -> None:
        """A 5000-byte image with 4096-byte pages is written as 4096 + 904."""
        sim = SamBaSimulator()
        image = _image(5000)

        result = _run(make_channel(sim), clock, image, samd)

        assert result.ok, result.to_summary()
        assert result.bytes_written == 5000
        assert result.metadata["chunks"] == 2
        assert result.metadata["engine"] == "SAM-BA"
        assert result.metadata["device_check"] == f"0x{crc16_ccitt(image.data):04X}"
        copies = [c for c in sim.commands if c.startswith("Y") and not c.endswith(",00000000")]
        assert copies == ["Y00002000,00001000", "Y00003000,00000388"]
        assert sim.letters()[-1] == "G"

    def test_verify_mismatch_skips_finalize_and_execute(self, make_channel, clock, samd) -> None:
        """The application is never started after a failed CRC."""
        sim = SamBaSimulator(crc_override=0xBEEF)

        result = _run(make_channel(sim), clock, _image(5000), samd)

        assert not result.ok
        assert result.stage is Stage.VERIFY
        assert not result.needs_manual_reset
        assert result.error.actual_crc == 0xBEEF
        assert "G" not in sim.letters()
        assert "K" not in sim.letters()

    def test_cancel_between_chunks(self, make_channel, clock, samd) -> None:
        """Cancel during chunk 1 of 3: chunk 1 finishes, chunk 2 never starts, K# is sent."""
        sim = SamBaSimulator()
        cancel = threading.Event()

        def on_progress(done, total, elapsed):
            cancel.set()

        result = _run(make_channel(sim), clock, _image(3 * 4096), samd, on_progress=on_progress, cancel=cancel)

        assert not result.ok
        assert result.stage is Stage.CANCELLED
        assert result.bytes_written == 4096
        assert sim.letters().count("S") == 1
        assert sim.letters()[-1] == "K"

    def test_cancel_before_erase(self, make_channel, clock, samd) -> None:
        """A cancel already set is honoured right after the handshake."""
        sim = SamBaSimulator()
        cancel = threading.Event()
        cancel.set()

        result = _run(make_channel(sim), clock, _image(100), samd, cancel=cancel)

        assert result.stage is Stage.CANCELLED
        assert "X" not in sim.letters()

    def test_silent_bootloader_fails_handshake_in_bounded_time(self, make_channel, clock, samd) -> None:
        start = clock.time()

        result = _run(make_channel(SilentDevice()), clock, _image(100), samd)

        assert result.stage is Stage.HANDSHAKE
        assert result.needs_manual_reset
        assert result.last_exchanges
        assert clock.time() - start < 15.0

    def test_wrong_erase_reply_is_mismatch(self, make_channel, clock, samd) -> None:
        sim = SamBaSimulator(erase_reply=b"?\n\r")

        result = _run(make_channel(sim), clock, _image(100), samd)

        assert result.stage is Stage.ERASE
        assert result.error.ack.status is AckStatus.MISMATCHED

    def test_progress_reports_committed_bytes(self, make_channel, clock, samd) -> None:
        calls = []

        _run(
            make_channel(SamBaSimulator()),
            clock,
            _image(5000),
            samd,
            on_progress=lambda done, total, elapsed: calls.append((done, total, elapsed)),
        )

        assert [(d, t) for d, t, _ in calls] == [(4096, 5000), (5000, 5000)]
        assert calls[0][2] < calls[1][2]

    def test_best_effort_warnings_carried_to_result(self, make_channel, clock) -> None:
        board = get_board("unor4wifi")
        sim = SamBaSimulator(copy_ack=False)

        result = _run(make_channel(sim), clock, _image(5000), board)

        assert result.ok
        assert len(result.warnings) == 2
        assert sim.letters()[-1] == "K"


class TestConfiguration:
    """Rejections before any I/O."""

    def test_unknown_family_writes_nothing(self, make_channel, clock) -> None:
        board = dataclasses.replace(get_board("uno"), family="xmodem")
        channel = make_channel(Stk500Simulator())

        result = _run(channel, clock, _image(100), board)

        assert result.stage is Stage.CONFIGURATION
        assert isinstance(result.error, UnsupportedProtocol)
        assert channel.writes == []

    def test_oversized_image_writes_nothing(self, make_channel, clock) -> None:
        board = get_board("uno")
        channel = make_channel(Stk500Simulator())

        result = _run(channel, clock, _image(board.flash_size + 1), board)

        assert result.stage is Stage.CONFIGURATION
        assert "does not fit" in result.reason
        assert channel.writes == []

    def test_image_beyond_stk500_address_range_writes_nothing(self, make_channel, clock) -> None:
        """LOAD_ADDRESS carries 16-bit word addresses; the check happens up front."""
        board = dataclasses.replace(get_board("uno"), flash_base=0x1FF80, flash_size=None)
        channel = make_channel(Stk500Simulator())

        result = _run(channel, clock, _image(256), board)

        assert result.stage is Stage.CONFIGURATION
        assert "0x20000 address range" in result.reason
        assert channel.writes == []

    def test_image_at_top_of_stk500_range_accepted(self, make_channel, clock) -> None:
        board = dataclasses.replace(get_board("uno"), flash_base=0x1FF00, flash_size=None)

        result = _run(make_channel(Stk500Simulator()), clock, _image(256), board)

        assert result.ok, result.to_summary()


class TestOtherProtocols:
    """STK500 and esptool through the same lifecycle."""

    def test_stk500_upload(self, make_channel, clock) -> None:
        sim = Stk500Simulator()
        image = _image(300)

        result = _run(make_channel(sim), clock, image, get_board("uno"))

        assert result.ok, result.to_summary()
        assert result.metadata["bootloader"] == "1E950F"
        assert "device_check" not in result.metadata
        assert bytes(sim.flash[i] for i in range(300)) == image.data

    def test_stk500_read_back_mismatch_stops_upload(self, make_channel, clock) -> None:
        sim = Stk500Simulator(corrupt_address=130)

        result = _run(make_channel(sim), clock, _image(300), get_board("uno"))

        assert result.stage is Stage.VERIFY
        assert result.bytes_written == 128

    def test_esptool_upload(self, make_channel, clock) -> None:
        sim = EspRomSimulator()
        image = _image(2500)

        result = _run(make_channel(sim), clock, image, get_board("esp32"))

        assert result.ok, result.to_summary()
        assert result.metadata["device_check"] == hashlib.md5(image.data).hexdigest()
        assert sim.end_flags == [0]

    def test_esptool_survives_garbled_reply(self, make_channel, clock) -> None:
        """A truncated FLASH_DATA reply is retried and reported per chunk."""
        sim = EspRomSimulator(garbled={ESP_FLASH_DATA: 1})
        image = _image(2500)

        result = _run(make_channel(sim), clock, image, get_board("esp32"))

        assert result.ok, result.to_summary()
        assert result.metadata["retried_chunks"] == {0: 2}
        assert sim.sequences == [0, 0, 1, 2]

    def test_clean_upload_reports_no_retries(self, make_channel, clock) -> None:
        result = _run(make_channel(Stk500Simulator()), clock, _image(300), get_board("uno"))

        assert result.ok
        assert "retried_chunks" not in result.metadata


class _BrokenChannel:
    """Channel whose writes never complete."""

    def __init__(self):
        self.writes = []

    def write(self, data):
        self.writes.append(data)
        return 0

    def read(self, max_bytes, timeout):
        return b""

    def flush(self, duration):
        return 0

    def close(self):
        pass


def test_transport_error_gets_running_stage(clock, samd) -> None:
    """Errors raised without a stage are attributed to the stage that was running."""
    result = _run(_BrokenChannel(), clock, _image(100), samd)

    assert isinstance(result.error, TransportError)
    assert result.stage is Stage.HANDSHAKE


def test_failure_context_excludes_failure_note(make_channel, clock, samd) -> None:
    log = ExchangeLog(clock=clock.time)

    result = _run(make_channel(SilentDevice()), clock, _image(100), samd, log=log)

    assert 0 < len(result.last_exchanges) <= FAILURE_CONTEXT
    assert not any(e.annotation.startswith("Failed at") for e in result.last_exchanges)
    assert log.entries[-1].annotation.startswith("Failed at handshake")


class _UnpluggedChannel(_BrokenChannel):
    """Channel raising its own I/O error, as a device unplugged mid-upload would."""

    def write(self, data):
        raise OSError(5, "Input/output error")


def test_channel_os_error_becomes_failed_result(clock, samd) -> None:
    result = _run(_UnpluggedChannel(), clock, _image(100), samd)

    assert not result.ok
    assert isinstance(result.error, TransportError)
    assert result.stage is Stage.HANDSHAKE
    assert "Input/output error" in result.reason
