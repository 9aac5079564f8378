"""
Core module for Board Flasher.

This module provides the single source of truth for:
- Engine selection by protocol family (strategy.py)
- Upload orchestration and cancellation (orchestrator.py)
- Per-upload state (session.py)
- Result objects (results.py)
- Standardized warnings/messages (messages.py)
- Address, baud and board parsing (parsing.py)

Front ends should call into this module rather than driving engines
themselves.
"""

from .strategy import ENGINES, select_engine
from .session import UploadSession
from .results import UploadResult
from .orchestrator import ProgressCallback, upload
from .parsing import parse_baud, parse_board, parse_offset
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    code_for_error,
    result_to_warnings,
    warnings_from_strings,
)

__all__ = [
    # Strategy
    "ENGINES",
    "select_engine",
    # Orchestration
    "ProgressCallback",
    "UploadSession",
    "upload",
    # Results
    "UploadResult",
    # Parsing
    "parse_baud",
    "parse_board",
    "parse_offset",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "code_for_error",
    "result_to_warnings",
    "warnings_from_strings",
]
