"""Tests for the SAM-BA engine against a simulated bootloader."""

import pytest

from board_flasher.firmware import Chunk, FirmwareImage, chunk_image
from board_flasher.models import get_board
from board_flasher.protocol.base import AckStatus
from board_flasher.protocol.errors import (
    EraseFailed,
    HandshakeFailed,
    ProgramFailed,
    VerifyMismatch,
    VerifyUnavailable,
)
from board_flasher.protocol.framing import crc16_ccitt
from board_flasher.protocol.samba import ASSUMED_VERSION, SamBaEngine

from simulators import SamBaSimulator, SilentDevice


@pytest.fixture
def samd():
    return get_board("mkr1000")


@pytest.fixture
def renesas():
    return get_board("unor4wifi")


def _image(size: int) -> FirmwareImage:
    return FirmwareImage(bytes((i * 7) & 0xFF for i in range(size)), name="test.bin")


class TestHandshake:
    """N# / V# / I# handshake."""

    def test_reads_version_and_info(self, make_link, samd) -> None:
        sim = SamBaSimulator()
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)

        version = engine.handshake()

        assert version.startswith("Arduino Bootloader (SAM-BA extended) 2.0")
        assert engine.is_arduino_variant
        assert engine.info == "nRF52840-QIAA"
        assert sim.letters() == "NVI"

    def test_missing_n_reply_is_tolerated(self, make_link, samd) -> None:
        """Some bootloaders never answer N#."""
        sim = SamBaSimulator(n_reply=False, version=b"v1.1 [Arduino:XYZ] Mar 4 2021")
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)

        assert engine.handshake() == "v1.1 [Arduino:XYZ] Mar 4 2021"
        assert any("N# reply absent" in e.annotation for e in link.log)

    def test_silent_bootloader_fails_within_bounded_time(self, make_link, samd, clock) -> None:
        """Every read has a deadline, so a dead port fails instead of hanging."""
        _, link = make_link(SilentDevice())
        engine = SamBaEngine(link, samd)
        start = clock.time()

        with pytest.raises(HandshakeFailed):
            engine.handshake()

        assert clock.time() - start < 15.0

    def test_board_may_proceed_without_version(self, make_link, renesas) -> None:
        """Boards flagged to proceed get an assumed version and a warning."""
        _, link = make_link(SilentDevice())
        engine = SamBaEngine(link, renesas)

        assert engine.handshake() == ASSUMED_VERSION
        assert engine.warnings


class TestErase:
    """X# erase acknowledgement."""

    def test_erase_acknowledged(self, make_link, samd) -> None:
        sim = SamBaSimulator()
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)

        ack = engine.erase(_image(100))

        assert ack.ok
        assert sim.commands == ["X00002000"]

    def test_wrong_reply_is_mismatch_not_timeout(self, make_link, samd) -> None:
        """A reply without the X byte is reported as a mismatch."""
        sim = SamBaSimulator(erase_reply=b"Q\n\r")
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)

        with pytest.raises(EraseFailed) as excinfo:
            engine.erase(_image(100))

        assert excinfo.value.ack.status is AckStatus.MISMATCHED
        assert sim.letters() == "X" * samd.retries

    def test_no_reply_is_timeout(self, make_link, samd) -> None:
        sim = SamBaSimulator(erase_reply=b"")
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)

        with pytest.raises(EraseFailed) as excinfo:
            engine.erase(_image(100))

        assert excinfo.value.ack.status is AckStatus.TIMED_OUT

    def test_leftover_terminator_does_not_hide_ack(self, make_link, samd) -> None:
        """A stray CR from the previous reply is skipped before the ACK line."""
        sim = SamBaSimulator(erase_reply=b"\rX\n\r")
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)

        assert engine.erase(_image(100)).ok

    def test_applet_is_staged_before_erase(self, make_link, renesas) -> None:
        """Renesas boards get the flash applet and its register writes first."""
        sim = SamBaSimulator()
        _, link = make_link(sim)
        engine = SamBaEngine(link, renesas)

        engine.erase(_image(100))

        assert sim.commands[0] == "S00000000,00000034"
        assert sim.commands[1:3] == ["W00000030,00000400", "W00000020,00000000"]
        assert sim.commands[3] == "X00000000"
        assert bytes(sim.sram[i] for i in range(52)) == renesas.applet.code


class TestProgram:
    """S# staging plus two-step Y# copy."""

    def test_chunk_is_staged_and_copied(self, make_link, samd) -> None:
        sim = SamBaSimulator()
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)
        chunk = Chunk(0, 0x2000, bytes(range(256)) * 16)

        engine.program_chunk(chunk)

        assert sim.commands == [
            "S20001000,00001000",
            "Y20001000,00000000",
            "Y00002000,00001000",
        ]
        assert bytes(sim.flash[0x2000 + i] for i in range(4096)) == chunk.data

    def test_required_copy_ack_failure_raises(self, make_link, samd) -> None:
        """SAMD boards require the copy ACK; silence exhausts the retries."""
        sim = SamBaSimulator(copy_ack=False)
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)

        with pytest.raises(ProgramFailed) as excinfo:
            engine.program_chunk(Chunk(2, 0x4000, b"\x01" * 64))

        assert excinfo.value.chunk_index == 2
        assert sim.letters().count("S") == samd.retries

    def test_best_effort_copy_ack_warns_and_continues(self, make_link, renesas) -> None:
        """Renesas boards continue without the copy ACK, flagged as unverified."""
        sim = SamBaSimulator(copy_ack=False)
        _, link = make_link(sim)
        engine = SamBaEngine(link, renesas)

        engine.program_chunk(Chunk(0, 0, b"\x01" * 64))

        assert len(engine.warnings) == 1
        assert "unverified" in engine.warnings[0]
        assert sim.letters() == "SYY"

    def test_transmission_delay_follows_payload(self, make_link, samd, clock) -> None:
        """Host waits at least the wire time of the payload before the next command."""
        sim = SamBaSimulator()
        _, link = make_link(sim)
        engine = SamBaEngine(link, samd)
        start = clock.time()

        engine.write_buffer(samd.sram_buffer, b"\x00" * 4096)

        wire_time = 4096 * 10 / samd.baud_rate
        assert clock.time() - start >= wire_time


class TestVerify:
    """Z# device CRC."""

    def _programmed(self, make_link, board, sim, image):
        _, link = make_link(sim)
        engine = SamBaEngine(link, board)
        for chunk in chunk_image(image, board.page_size, board.flash_base):
            engine.program_chunk(chunk)
        return engine

    def test_matching_crc(self, make_link, samd) -> None:
        image = _image(5000)
        engine = self._programmed(make_link, samd, SamBaSimulator(), image)

        assert engine.verify(image) == crc16_ccitt(image.data)

    def test_mismatch_reports_both_values(self, make_link, samd) -> None:
        image = _image(5000)
        engine = self._programmed(make_link, samd, SamBaSimulator(crc_override=0x1234), image)

        with pytest.raises(VerifyMismatch) as excinfo:
            engine.verify(image)

        assert excinfo.value.actual_crc == 0x1234
        assert excinfo.value.expected_crc == crc16_ccitt(image.data)

    def test_missing_crc_is_unavailable(self, make_link, samd) -> None:
        _, link = make_link(SilentDevice())
        engine = SamBaEngine(link, samd)

        with pytest.raises(VerifyUnavailable):
            engine.verify(_image(10))


class TestExecute:
    """Starting the application."""

    def test_samd_jumps_to_entry(self, make_link, samd) -> None:
        sim = SamBaSimulator()
        _, link = make_link(sim)
        SamBaEngine(link, samd).execute()

        assert sim.commands == ["G00002000"]

    def test_renesas_resets(self, make_link, renesas) -> None:
        sim = SamBaSimulator()
        _, link = make_link(sim)
        SamBaEngine(link, renesas).execute()

        assert sim.commands == ["K"]
