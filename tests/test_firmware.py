"""Tests for firmware loading, Intel HEX decoding and chunking."""

import pytest

from board_flasher.firmware import (
    FirmwareImage,
    chunk_image,
    load_firmware,
    parse_intel_hex,
)


def _record(rtype: int, address: int, data: bytes) -> str:
    raw = bytes([len(data), address >> 8, address & 0xFF, rtype]) + data
    checksum = (-sum(raw)) & 0xFF
    return ":" + (raw + bytes([checksum])).hex().upper()


EOF = ":00000001FF"


class TestChunking:
    """Chunk layout invariants."""

    def test_5000_bytes_with_4096_pages(self) -> None:
        chunks = chunk_image(FirmwareImage(b"\x01" * 5000), 4096, base=0x2000)
        assert [len(c.data) for c in chunks] == [4096, 904]
        assert [c.address for c in chunks] == [0x2000, 0x3000]
        assert [c.index for c in chunks] == [0, 1]

    @pytest.mark.parametrize("size", [1, 127, 128, 129, 1000])
    def test_chunks_cover_image_exactly(self, size) -> None:
        """Chunks are contiguous, ascending, unpadded and reassemble the image."""
        image = FirmwareImage(bytes(i & 0xFF for i in range(size)))
        chunks = chunk_image(image, 128, base=0x100)

        assert b"".join(c.data for c in chunks) == image.data
        for previous, current in zip(chunks, chunks[1:]):
            assert current.address == previous.end
        assert all(len(c.data) == 128 for c in chunks[:-1])
        assert 0 < len(chunks[-1].data) <= 128

    def test_invalid_page_size(self) -> None:
        with pytest.raises(ValueError):
            chunk_image(FirmwareImage(b"\x00"), 0)


def test_declared_size_must_match() -> None:
    with pytest.raises(ValueError):
        FirmwareImage(b"\x00" * 4, size=5)
    assert len(FirmwareImage(b"\x00" * 4)) == 4


class TestIntelHex:
    """Intel HEX decoding."""

    def test_data_and_eof(self) -> None:
        text = "\n".join([_record(0, 0x0000, b"\x0C\x94\x5C\x00"), EOF])
        data, low = parse_intel_hex(text)
        assert data == b"\x0C\x94\x5C\x00"
        assert low == 0

    def test_gap_filled_with_erased_bytes(self) -> None:
        text = "\n".join([_record(0, 0x10, b"\x01"), _record(0, 0x13, b"\x02"), EOF])
        data, low = parse_intel_hex(text)
        assert low == 0x10
        assert data == b"\x01\xFF\xFF\x02"

    def test_extended_linear_address(self) -> None:
        text = "\n".join([
            _record(4, 0, b"\x00\x01"),
            _record(0, 0x2000, b"\xAA\xBB"),
            _record(5, 0, b"\x00\x01\x20\x00"),
            EOF,
        ])
        data, low = parse_intel_hex(text)
        assert low == 0x12000
        assert data == b"\xAA\xBB"

    def test_extended_segment_address(self) -> None:
        text = "\n".join([_record(2, 0, b"\x10\x00"), _record(0, 0x0004, b"\x55"), EOF])
        _, low = parse_intel_hex(text)
        assert low == 0x10004

    def test_bad_checksum(self) -> None:
        good = _record(0, 0, b"\x01\x02")
        bad = good[:-2] + ("00" if good[-2:] != "00" else "01")
        with pytest.raises(ValueError, match="checksum"):
            parse_intel_hex(bad + "\n" + EOF)

    def test_overlap_rejected(self) -> None:
        text = "\n".join([_record(0, 0, b"\x01\x02"), _record(0, 1, b"\x03"), EOF])
        with pytest.raises(ValueError, match="overlap"):
            parse_intel_hex(text)

    def test_missing_record_mark(self) -> None:
        with pytest.raises(ValueError):
            parse_intel_hex("0000000000\n" + EOF)


class TestLoadFirmware:
    """File loading by extension."""

    def test_binary_file(self, tmp_path) -> None:
        path = tmp_path / "sketch.bin"
        path.write_bytes(b"\x00\x01\x02")
        image = load_firmware(path)
        assert image.data == b"\x00\x01\x02"
        assert image.name == "sketch.bin"
        assert image.load_address is None

    def test_hex_file(self, tmp_path) -> None:
        path = tmp_path / "sketch.hex"
        path.write_text(_record(0, 0, b"\xDE\xAD") + "\n" + EOF + "\n")
        image = load_firmware(path)
        assert image.data == b"\xDE\xAD"
        assert image.load_address == 0

    def test_empty_file_rejected(self, tmp_path) -> None:
        path = tmp_path / "empty.bin"
        path.write_bytes(b"")
        with pytest.raises(ValueError):
            load_firmware(path)
