"""Round/message state for Roundtable.

This package provides the data model, message reducers, validation and the
central ``ChatStore``. Import the store from ``roundtable.state.store``.
"""

from roundtable.state.schema import (
    Analysis,
    Message,
    Participant,
    PreSearch,
    StreamResumptionState,
    Thread,
)

__all__ = [
    "Analysis",
    "Message",
    "Participant",
    "PreSearch",
    "StreamResumptionState",
    "Thread",
]
