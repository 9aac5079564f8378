"""
Protocol family -> engine dispatch.

Pure lookup on the family tag; no protocol logic and no I/O. An unknown
family is rejected here, before anything touches the serial channel.
"""

from typing import Dict, Union

from board_flasher.models.registry import ProtocolFamily
from board_flasher.protocol.errors import UnsupportedProtocol
from board_flasher.protocol.esptool import EspToolEngine
from board_flasher.protocol.samba import SamBaEngine
from board_flasher.protocol.stk500 import Stk500Engine

ENGINES: Dict[ProtocolFamily, type] = {
    ProtocolFamily.SAM_BA: SamBaEngine,
    ProtocolFamily.STK500: Stk500Engine,
    ProtocolFamily.ESPTOOL: EspToolEngine,
}


def select_engine(family: Union[ProtocolFamily, str]) -> type:
    """
    Get the engine class for a protocol family.

    Args:
        family: ProtocolFamily or its string value ("sam-ba", "stk500", "esptool")

    Raises:
        UnsupportedProtocol: If no engine handles the family
    """
    if not isinstance(family, ProtocolFamily):
        try:
            family = ProtocolFamily(family)
        except ValueError:
            raise UnsupportedProtocol(
                f"Unknown protocol family {family!r}. "
                f"Supported: {', '.join(f.value for f in ENGINES)}"
            )
    try:
        return ENGINES[family]
    except KeyError:
        raise UnsupportedProtocol(f"No engine for protocol family {family.value!r}")
