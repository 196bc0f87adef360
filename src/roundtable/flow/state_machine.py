"""Flow state machine for Roundtable.

The flow state is recomputed from a store snapshot on every evaluation;
side effects fire only on state edges. Keeping the two apart is what stops
frequent re-evaluation from duplicating effects such as moderator creation
or navigation.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from roundtable.flow.orchestrator import orchestrator
from roundtable.flow.round_manager import round_manager
from roundtable.state.schema import (
    FlowAction,
    FlowActionType,
    FlowState,
    MessageStatus,
    ScreenMode,
)
from roundtable.state.utils import get_enabled_participants
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class FlowContext:
    """Everything ``determine_flow_state`` looks at."""

    thread_id: Optional[str] = None
    thread_slug: Optional[str] = None
    has_ai_generated_title: bool = False
    screen_mode: ScreenMode = ScreenMode.OVERVIEW
    current_round: int = 0
    participant_count: int = 0
    all_participants_responded: bool = False
    is_streaming: bool = False
    moderator_exists: bool = False
    moderator_status: Optional[MessageStatus] = None
    is_moderator_streaming: bool = False
    is_creating_moderator: bool = False
    is_creating_thread: bool = False
    pending_animations: FrozenSet[int] = field(default_factory=frozenset)
    has_navigated: bool = False


def _moderator_status(state, round_number: int) -> Optional[MessageStatus]:
    """Status of the round's synthesis, from its message or analysis record."""
    status = None
    for message in state.messages:
        if message.is_moderator and message.round_number == round_number:
            if message.has_error:
                status = MessageStatus.FAILED
            elif message.is_terminal:
                status = MessageStatus.COMPLETE
            else:
                status = MessageStatus.STREAMING
            break

    if status is None:
        for analysis in state.analyses:
            if analysis.round_number == round_number:
                status = analysis.status
                break

    return status


def build_flow_context(state) -> FlowContext:
    """Snapshot the store state into a ``FlowContext``."""
    thread = state.thread
    current_round = round_manager.get_gating_round(
        state.messages, state.streaming_round_number
    )
    moderator_status = _moderator_status(state, current_round)

    return FlowContext(
        thread_id=thread.id if thread else state.created_thread_id,
        thread_slug=thread.slug if thread else None,
        has_ai_generated_title=bool(thread and thread.is_ai_generated_title),
        screen_mode=state.screen_mode,
        current_round=current_round,
        participant_count=len(get_enabled_participants(state.participants)),
        all_participants_responded=orchestrator.all_participants_responded(
            state.messages, state.participants, current_round
        ),
        is_streaming=state.is_streaming,
        moderator_exists=moderator_status is not None,
        moderator_status=moderator_status,
        is_moderator_streaming=state.is_moderator_streaming,
        is_creating_moderator=state.is_creating_moderator,
        is_creating_thread=state.is_creating_thread,
        pending_animations=state.pending_animations,
        has_navigated=state.has_navigated,
    )


def determine_flow_state(context: FlowContext) -> FlowState:
    """Compute the flow state; the first matching rule wins."""
    if context.has_navigated:
        return FlowState.COMPLETE

    if (
        context.screen_mode == ScreenMode.OVERVIEW
        and context.moderator_status == MessageStatus.COMPLETE
        and context.has_ai_generated_title
        and context.thread_slug
    ):
        return FlowState.NAVIGATING

    if (
        context.is_moderator_streaming
        or context.moderator_status == MessageStatus.STREAMING
        or (context.moderator_exists and context.is_streaming)
    ):
        return FlowState.STREAMING_MODERATOR

    if (
        not context.is_streaming
        and context.all_participants_responded
        and context.participant_count > 0
        and not context.moderator_exists
        and not context.is_creating_moderator
        and not context.pending_animations
    ):
        return FlowState.CREATING_MODERATOR

    if context.is_streaming and not context.moderator_exists:
        return FlowState.STREAMING_PARTICIPANTS

    if context.is_creating_thread:
        return FlowState.CREATING_THREAD

    return FlowState.IDLE


def get_next_action(
    prev_state: Optional[FlowState],
    current_state: FlowState,
    context: FlowContext,
) -> Optional[FlowAction]:
    """Action for the transition ``prev_state -> current_state``, if any.

    Same-state transitions never produce an action.
    """
    if prev_state == current_state:
        return None

    if current_state == FlowState.CREATING_MODERATOR and context.thread_id:
        return FlowAction(FlowActionType.CREATE_MODERATOR)

    if (
        current_state == FlowState.NAVIGATING
        and context.thread_slug
        and not context.has_navigated
    ):
        if prev_state == FlowState.STREAMING_MODERATOR:
            return FlowAction(FlowActionType.INVALIDATE_CACHE)
        return FlowAction(FlowActionType.NAVIGATE, slug=context.thread_slug)

    return None


class FlowController:
    """Evaluates store snapshots and emits actions on flow edges.

    Holds the previous flow state between evaluations. Moderator creation is
    additionally checked against the store's moderator-created guard, so a
    round never gets two ``CREATE_MODERATOR`` actions even if the flow leaves
    and re-enters ``CREATING_MODERATOR``.
    """

    def __init__(self):
        self.prev_state: Optional[FlowState] = None
        self._navigation_pending = False

    def reset(self) -> None:
        self.prev_state = None
        self._navigation_pending = False

    def evaluate(self, state) -> Optional[FlowAction]:
        """Evaluate a snapshot and return the action for the edge, if any."""
        context = build_flow_context(state)
        current = determine_flow_state(context)
        prev = self.prev_state
        self.prev_state = current

        action = get_next_action(prev, current, context)

        if (
            action is None
            and current == FlowState.NAVIGATING
            and self._navigation_pending
            and not context.has_navigated
        ):
            # Cache invalidation went out on the previous edge; navigation follows
            self._navigation_pending = False
            return FlowAction(FlowActionType.NAVIGATE, slug=context.thread_slug)

        if action is None:
            return None

        if action.type == FlowActionType.CREATE_MODERATOR:
            if state.tracking.has_moderator_been_created(context.current_round):
                logger.info(
                    f"Moderator for round {context.current_round} already created, "
                    f"skipping"
                )
                return None

        if action.type == FlowActionType.INVALIDATE_CACHE:
            self._navigation_pending = True

        logger.debug(f"Flow {prev} -> {current}: {action.type.value}")
        return action
