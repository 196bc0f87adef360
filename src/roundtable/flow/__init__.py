"""Flow control for Roundtable rounds.

Round derivation, the pre-search gate, deduplication guards, the participant
orchestrator and the flow state machine.
"""

from .guards import RoundTracking
from .orchestrator import ParticipantOrchestrator, orchestrator
from .round_manager import RoundManager, round_manager
from .state_machine import (
    FlowContext,
    FlowController,
    build_flow_context,
    determine_flow_state,
    get_next_action,
)

__all__ = [
    "RoundTracking",
    "ParticipantOrchestrator",
    "orchestrator",
    "RoundManager",
    "round_manager",
    "FlowContext",
    "FlowController",
    "build_flow_context",
    "determine_flow_state",
    "get_next_action",
]
