"""
Serial Transport Layer

Duplex byte channel that every bootloader engine drives. Owns no protocol
knowledge.

This module provides:
- The ByteChannel contract (read with timeout, write, flush, close)
- SerialChannel, a pyserial-backed implementation
- Bootloader entry helpers for the port-opening layer (1200-baud touch,
  ESP DTR/RTS strapping sequence)
"""

import logging
import time
from typing import Optional, Protocol

import serial

from board_flasher.protocol.errors import TransportError

logger = logging.getLogger(__name__)


class ByteChannel(Protocol):
    """
    Duplex byte channel contract.

    read() returns whatever bytes arrive before the timeout (possibly short,
    possibly empty); it never raises on timeout. write() returns the number of
    bytes written. flush() discards inbound bytes for up to duration seconds
    and returns how many were discarded.
    """

    def read(self, max_bytes: int, timeout: float) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def flush(self, duration: float) -> int: ...

    def close(self) -> None: ...


class SerialChannel:
    """
    pyserial-backed byte channel.

    Example:
        channel = SerialChannel(port="/dev/ttyACM0", baudrate=230400)
        channel.open()
        channel.write(b"V#")
        reply = channel.read(64, timeout=1.0)
        channel.close()
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        write_timeout: float = 5.0,
        dtr: Optional[bool] = True,
        rts: Optional[bool] = True,
    ):
        """
        Initialize channel.

        Args:
            port: Serial port (e.g., "/dev/ttyACM0", "COM3") or pyserial URL
            baudrate: Serial baud rate
            write_timeout: Seconds a write may block before it is an error
            dtr: DTR level after open (None leaves it untouched)
            rts: RTS level after open (None leaves it untouched)
        """
        self.port = port
        self.baudrate = baudrate
        self.write_timeout = write_timeout
        self.dtr = dtr
        self.rts = rts
        self.ser: Optional[serial.Serial] = None

    def open(self) -> "SerialChannel":
        """
        Open serial port (8N1, no flow control).

        Raises:
            TransportError: If port cannot be opened
        """
        try:
            self.ser = serial.serial_for_url(
                self.port,
                baudrate=self.baudrate,
                bytesize=8,
                parity="N",
                stopbits=1,
                timeout=0,
                write_timeout=self.write_timeout,
                rtscts=False,
                dsrdtr=False,
            )
            if self.dtr is not None:
                self.ser.dtr = self.dtr
            if self.rts is not None:
                self.ser.rts = self.rts
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
            logger.debug(f"Opened {self.port} at {self.baudrate} bps")
        except serial.SerialException as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")
        return self

    def close(self) -> None:
        """Close serial port."""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def __enter__(self) -> "SerialChannel":
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open)

    def _require_open(self) -> serial.Serial:
        if not self.ser or not self.ser.is_open:
            raise TransportError("Serial port not open")
        return self.ser

    def write(self, data: bytes) -> int:
        """
        Write bytes to the port.

        Raises:
            TransportError: If the write fails or is incomplete
        """
        ser = self._require_open()
        try:
            written = ser.write(data)
            ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write error: {e}")
        if written != len(data):
            raise TransportError(f"Incomplete write: sent {written}/{len(data)} bytes")
        return written

    def read(self, max_bytes: int, timeout: float) -> bytes:
        """
        Read up to max_bytes, returning as soon as anything has arrived.

        Blocks for at most `timeout` waiting for the first byte, then takes
        whatever else is already buffered. Returns b"" on timeout.
        """
        ser = self._require_open()
        if max_bytes <= 0:
            return b""
        try:
            ser.timeout = max(0.0, timeout)
            first = ser.read(1)
            if not first:
                return b""
            waiting = min(ser.in_waiting, max_bytes - 1)
            rest = ser.read(waiting) if waiting else b""
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")
        return first + rest

    def flush(self, duration: float = 0.2) -> int:
        """
        Drain and discard inbound bytes for up to `duration` seconds.

        Returns:
            Number of bytes discarded
        """
        ser = self._require_open()
        discarded = 0
        deadline = time.monotonic() + duration
        try:
            discarded += ser.in_waiting
            ser.reset_input_buffer()
            while time.monotonic() < deadline:
                ser.timeout = min(0.02, max(0.0, deadline - time.monotonic()))
                junk = ser.read(256)
                discarded += len(junk)
        except serial.SerialException as e:
            raise TransportError(f"Flush error: {e}")
        if discarded:
            logger.debug(f"Drained {discarded} bytes of junk from buffer")
        return discarded

    def pulse_esp_bootloader(self, hold: float = 0.1, boot_wait: float = 1.2) -> None:
        """
        Strap an ESP32 dev board into its ROM bootloader.

        On the common auto-reset circuit DTR drives IO0 and RTS drives EN,
        both inverted by transistors:
            1. EN low (RTS=1), IO0 don't care (DTR=0): hold in reset
            2. EN high (RTS=0), IO0 low (DTR=1): boot into ROM loader
            3. Release both lines
        """
        ser = self._require_open()
        try:
            ser.dtr = False
            ser.rts = True
            time.sleep(hold)
            ser.dtr = True
            ser.rts = False
            time.sleep(boot_wait)
            ser.dtr = False
            time.sleep(hold)
        except serial.SerialException as e:
            raise TransportError(f"Control line error: {e}")
        logger.info("ESP reset sequence complete - chip should be in ROM bootloader")

    def hard_reset(self, hold: float = 0.1) -> None:
        """Pulse RTS (EN) to restart an ESP board into the new application."""
        ser = self._require_open()
        try:
            ser.dtr = False
            ser.rts = True
            time.sleep(hold)
            ser.rts = False
        except serial.SerialException as e:
            raise TransportError(f"Control line error: {e}")


def perform_1200bps_touch(port: str, settle: float = 0.5) -> None:
    """
    Force a board with native USB into its bootloader.

    Opening the CDC port at 1200 baud and dropping DTR signals the running
    sketch to reset into the bootloader:
        1. Open at 1200 baud with DTR=1, RTS=1
        2. Drop DTR (triggers the reset)
        3. Close and wait for the bootloader to enumerate

    Raises:
        TransportError: If the port cannot be opened at 1200 baud
    """
    logger.info(f"1200-baud touch on {port}")
    try:
        ser = serial.Serial(port=port, baudrate=1200, timeout=0)
        try:
            ser.dtr = True
            ser.rts = True
            time.sleep(0.01)
            ser.dtr = False
        finally:
            ser.close()
    except serial.SerialException as e:
        raise TransportError(f"1200-baud touch failed on {port}: {e}")
    time.sleep(settle)


def list_serial_ports():
    """Return (device, description, hwid) tuples for attached serial ports."""
    from serial.tools import list_ports

    return [(p.device, p.description, p.hwid) for p in sorted(list_ports.comports())]

