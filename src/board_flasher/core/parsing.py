"""
Centralized parsing helpers for addresses, baud rates and board names.

Front ends must import these helpers rather than re-implement them.
"""

from typing import Optional

from board_flasher.models.registry import BoardDescriptor, get_board

STANDARD_BAUD_RATES = (
    9600, 19200, 38400, 57600, 115200, 230400, 460800, 921600,
)


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse an address or size from string, supporting multiple formats.

    Accepts:
        - Decimal: "8192"
        - Hex with 0x prefix: "0x2000" or "0X2000"
        - Hex with h suffix: "2000h" or "2000H"
        - None or empty for "use the board default"

    Returns:
        Parsed integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        # Hex with 0x/0X prefix
        if value.lower().startswith("0x"):
            result = int(value, 16)
        # Hex with h/H suffix
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        # Decimal
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid address '{value}'. Use decimal (8192), hex (0x2000), or suffix (2000h)."
        )
    if result < 0 or result > 0xFFFFFFFF:
        raise ValueError(f"Address '{value}' is outside the 32-bit range")
    return result


def parse_baud(value: Optional[str]) -> Optional[int]:
    """
    Parse a baud rate. Non-standard rates are accepted (USB CDC ignores
    the rate entirely) but must be positive integers.

    Raises:
        ValueError: If value is not a positive integer.
    """
    if value is None or not str(value).strip():
        return None
    try:
        baud = int(str(value).strip())
    except ValueError:
        raise ValueError(
            f"Invalid baud rate '{value}'. Common rates: "
            + ", ".join(str(b) for b in STANDARD_BAUD_RATES)
        )
    if baud <= 0:
        raise ValueError(f"Baud rate must be positive, got {baud}")
    return baud


def parse_board(value: str) -> BoardDescriptor:
    """
    Resolve a board short name or FQBN.

    Raises:
        ValueError: If the board is unknown.
    """
    try:
        return get_board(value)
    except KeyError as e:
        raise ValueError(e.args[0])
