"""Execution layer for Roundtable.

Core Components:
- contracts: collaborator protocols and stream events
- RoundRunner: asyncio driver for one round
- StreamResumptionManager: re-attaches buffered streams after a reload
"""

from .contracts import (
    StreamFailed,
    StreamFinished,
    TextDelta,
    drain_stream,
)
from .round_runner import RoundResult, RoundRunner
from .stream_resumption import ResumptionDecision, StreamResumptionManager

__all__ = [
    "StreamFailed",
    "StreamFinished",
    "TextDelta",
    "drain_stream",
    "RoundResult",
    "RoundRunner",
    "ResumptionDecision",
    "StreamResumptionManager",
]
