"""Tests for the typer CLI."""

import pytest
from typer.testing import CliRunner

from board_flasher import cli
from board_flasher.cli import app

from simulators import FakeClock, ScriptedChannel, Stk500Simulator

runner = CliRunner()


@pytest.fixture
def firmware(tmp_path):
    path = tmp_path / "sketch.bin"
    path.write_bytes(b"123456789")
    return path


class _FakeSerial(ScriptedChannel):
    """Stands in for SerialChannel: an Optiboot simulator behind the port."""

    instances = []

    def __init__(self, port, baudrate=115200):
        super().__init__(Stk500Simulator(), FakeClock())
        self.port = port
        self.baudrate = baudrate
        _FakeSerial.instances.append(self)

    def open(self):
        return self


@pytest.fixture
def fake_serial(monkeypatch):
    _FakeSerial.instances = []
    monkeypatch.setattr(cli, "SerialChannel", _FakeSerial)
    return _FakeSerial


def test_boards_lists_every_family() -> None:
    result = runner.invoke(app, ["boards"])
    assert result.exit_code == 0
    for name in ("uno", "unor4wifi", "mkr1000", "esp32"):
        assert name in result.output


def test_boards_family_filter_json() -> None:
    result = runner.invoke(app, ["boards", "--family", "stk500", "--json"])
    assert result.exit_code == 0
    assert '"name": "uno"' in result.output
    assert "unor4wifi" not in result.output


def test_boards_unknown_family() -> None:
    result = runner.invoke(app, ["boards", "--family", "xmodem"])
    assert result.exit_code != 0


def test_checksum(firmware) -> None:
    result = runner.invoke(app, ["checksum", str(firmware), "--json"])
    assert result.exit_code == 0
    assert '"crc16": "0x31C3"' in result.output
    assert '"md5": "25f9e794323b453885f5181f1b624d0b"' in result.output


def test_checksum_missing_file(tmp_path) -> None:
    result = runner.invoke(app, ["checksum", str(tmp_path / "missing.bin")])
    assert result.exit_code == 1


def test_upload_dry_run_needs_no_port(firmware) -> None:
    result = runner.invoke(app, ["upload", str(firmware), "--board", "mkr1000", "--dry-run"])
    assert result.exit_code == 0
    assert "Dry run complete" in result.output
    assert "0x00002000" in result.output


def test_upload_flash_base_override(firmware) -> None:
    result = runner.invoke(
        app, ["upload", str(firmware), "-b", "mkr1000", "--flash-base", "4000h", "--dry-run"]
    )
    assert result.exit_code == 0
    assert "0x00004000" in result.output


def test_upload_unknown_board_is_bad_parameter(firmware) -> None:
    result = runner.invoke(app, ["upload", str(firmware), "--board", "teensy41", "--dry-run"])
    assert result.exit_code == 2


def test_upload_requires_port(firmware) -> None:
    result = runner.invoke(app, ["upload", str(firmware), "--board", "uno"])
    assert result.exit_code == 2


def test_upload_over_serial(firmware, fake_serial, tmp_path) -> None:
    log_path = tmp_path / "exchanges.log"

    result = runner.invoke(
        app,
        ["upload", str(firmware), "-b", "uno", "-p", "/dev/ttyUSB0", "--log-file", str(log_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Uploaded 9 bytes" in result.output
    port = fake_serial.instances[0]
    assert port.baudrate == 115200
    assert bytes(port.device.flash[i] for i in range(9)) == b"123456789"
    assert "TX" in log_path.read_text()


def test_upload_json_with_baud_override(firmware, fake_serial) -> None:
    """The baud override reaches the port and the result is printed as JSON."""
    result = runner.invoke(
        app, ["upload", str(firmware), "-b", "uno", "-p", "/dev/ttyUSB0", "--baud", "57600", "--json"],
    )
    assert result.exit_code == 0
    assert '"ok": true' in result.output
    assert fake_serial.instances[0].baudrate == 57600


def test_upload_failure_exits_nonzero(firmware, fake_serial, monkeypatch) -> None:
    """A wrong device signature fails the upload with exit code 1."""

    class _WrongChip(_FakeSerial):
        def __init__(self, port, baudrate=115200):
            super().__init__(port, baudrate)
            self.device.signature = b"\x1e\x95\x16"

    monkeypatch.setattr(cli, "SerialChannel", _WrongChip)

    result = runner.invoke(app, ["upload", str(firmware), "-b", "uno", "-p", "/dev/ttyUSB0"])

    assert result.exit_code == 1
    assert "W_HANDSHAKE_FAILED" in result.output


def test_hex_linked_elsewhere_warns(tmp_path) -> None:
    path = tmp_path / "blink.hex"
    path.write_text(":02100000DEAD63\n:00000001FF\n")

    result = runner.invoke(app, ["upload", str(path), "-b", "mkr1000", "--dry-run"])

    assert result.exit_code == 0
    assert "linked at 0x1000" in result.output


def test_hex_linked_at_flash_base_is_quiet(tmp_path) -> None:
    path = tmp_path / "blink.hex"
    path.write_text(":02200000DEAD53\n:00000001FF\n")

    result = runner.invoke(app, ["upload", str(path), "-b", "mkr1000", "--dry-run"])

    assert result.exit_code == 0
    assert "linked at" not in result.output


def test_hex_for_renesas_accounts_for_bootloader_offset(tmp_path) -> None:
    """Uno R4 sketches are linked at 0x4000 while the bootloader is addressed from 0."""
    path = tmp_path / "blink.hex"
    path.write_text(":02400000DEAD33\n:00000001FF\n")

    result = runner.invoke(app, ["upload", str(path), "-b", "unor4wifi", "--dry-run"])

    assert result.exit_code == 0
    assert "linked at" not in result.output
