"""
Board registry for supported bootloaders.

Provides a unified layer for board lookup, flash layout and timing.
"""

from .registry import (
    BOARDS,
    RENESAS_FLASH_APPLET,
    BoardDescriptor,
    FlashApplet,
    ProtocolFamily,
    Timing,
    get_board,
    get_boards_by_family,
    list_boards,
)

__all__ = [
    "BOARDS",
    "RENESAS_FLASH_APPLET",
    "BoardDescriptor",
    "FlashApplet",
    "ProtocolFamily",
    "Timing",
    "get_board",
    "get_boards_by_family",
    "list_boards",
]
