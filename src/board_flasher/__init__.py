"""
Board Flasher - firmware upload engine for serial bootloaders

Uploads firmware to SAM-BA (BOSSA), STK500 (Optiboot) and ESP32 ROM loader
targets with verification and structured failure reporting.
"""

__version__ = "0.1.0"

from board_flasher.core import UploadResult, upload
from board_flasher.firmware import FirmwareImage, load_firmware
from board_flasher.models import BoardDescriptor, get_board, list_boards
from board_flasher.protocol.transport import SerialChannel

__all__ = [
    "BoardDescriptor",
    "FirmwareImage",
    "SerialChannel",
    "UploadResult",
    "get_board",
    "list_boards",
    "load_firmware",
    "upload",
    "__version__",
]
