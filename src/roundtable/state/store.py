"""Central state container for Roundtable.

``ChatState`` is an immutable snapshot of everything the flow needs for the
loaded thread. ``ChatStore`` wraps one snapshot: each operation computes the
next snapshot from the previous one plus its input and commits it with a
single ``_set`` call, so no reader can observe a half-applied transition.
Subscribers are notified after every commit.

Store instances are independent; nothing is shared between them.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from roundtable.config.models import FlowConfig
from roundtable.execution import stream_resumption as resumption
from roundtable.flow.guards import RoundTracking
from roundtable.flow.orchestrator import orchestrator
from roundtable.flow.round_manager import round_manager
from roundtable.flow.state_machine import (
    FlowContext,
    build_flow_context,
    determine_flow_state,
)
from roundtable.state import reducers
from roundtable.state.defaults import (
    ANIMATION_STATE_RESET,
    COMPLETE_RESET_STATE,
    FORM_DEFAULTS,
    MODERATOR_STATE_RESET,
    PENDING_MESSAGE_STATE_RESET,
    REGENERATION_STATE_RESET,
    STREAM_RESUMPTION_STATE_RESET,
    STREAMING_STATE_RESET,
    THREAD_NAVIGATION_RESET_STATE,
)
from roundtable.state.schema import (
    DEFAULT_CHAT_MODE,
    Analysis,
    ChatMode,
    ErrorCategory,
    FlowState,
    Message,
    MessageStatus,
    Participant,
    PreSearch,
    PreSearchResult,
    ScreenMode,
    StreamResumptionState,
    Thread,
    utc_now,
)
from roundtable.state.utils import (
    create_moderator_message,
    create_participant_message,
    create_user_message,
    get_enabled_participants,
    get_participant_messages_for_round,
    get_user_message_for_round,
    moderator_message_id,
    sort_by_priority,
)
from roundtable.state.validators import StateValidator
from roundtable.utils.exceptions import StateError
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[["ChatState", "ChatState", str], None]


@dataclass(frozen=True)
class ChatState:
    """Snapshot of the store."""

    # Form
    input_value: str = ""
    selected_mode: ChatMode = DEFAULT_CHAT_MODE
    selected_participants: Tuple[Participant, ...] = ()
    enable_web_search: bool = False

    # Thread data
    thread: Optional[Thread] = None
    participants: Tuple[Participant, ...] = ()
    messages: Tuple[Message, ...] = ()
    pre_searches: Tuple[PreSearch, ...] = ()
    analyses: Tuple[Analysis, ...] = ()
    stream_resumption: Optional[StreamResumptionState] = None

    # Streaming
    is_streaming: bool = False
    current_participant_index: int = 0
    streaming_round_number: Optional[int] = None
    waiting_to_start_streaming: bool = False
    next_participant_to_trigger: Optional[int] = None
    is_moderator_streaming: bool = False
    is_creating_moderator: bool = False

    # Round lifecycle
    is_regenerating: bool = False
    regenerating_round_number: Optional[int] = None
    is_waiting_for_changelog: bool = False
    pending_message: Optional[str] = None
    expected_participant_ids: Tuple[str, ...] = ()
    has_sent_pending_message: bool = False
    error: Optional[str] = None

    # Thread creation and navigation
    is_creating_thread: bool = False
    created_thread_id: Optional[str] = None
    screen_mode: ScreenMode = ScreenMode.OVERVIEW
    has_navigated: bool = False
    has_initially_loaded: bool = False
    pending_animations: FrozenSet[int] = frozenset()

    tracking: RoundTracking = field(default_factory=RoundTracking)

    @property
    def thread_id(self) -> Optional[str]:
        if self.thread is not None:
            return self.thread.id
        return self.created_thread_id

    @property
    def current_round(self) -> int:
        return round_manager.get_current_round(self.messages)

    @property
    def enabled_participants(self) -> List[Participant]:
        return get_enabled_participants(self.participants)


class ChatStore:
    """The single mutable container for a loaded thread.

    Every public operation is one atomic transition. Query helpers never
    commit.
    """

    def __init__(
        self,
        config: Optional[FlowConfig] = None,
        initial_state: Optional[ChatState] = None,
    ):
        """Initialize the store.

        Args:
            config: Flow configuration (timeouts, invariant checking)
            initial_state: Starting snapshot, empty by default
        """
        self.config = config or FlowConfig()
        self.validator = StateValidator()
        self._state = initial_state or ChatState()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChatState:
        return self._state

    def get_state(self) -> ChatState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(next_state, prev_state, action)``.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, next_state: ChatState, action: str) -> None:
        prev = self._state
        if next_state is prev:
            return

        if self.config.validate_invariants and next_state.messages is not prev.messages:
            self.validator.validate_round_invariants(next_state.messages)

        self._state = next_state
        logger.debug(f"[{action}]")
        for listener in list(self._listeners):
            listener(next_state, prev, action)

    def _update(self, action: str, **changes: Any) -> None:
        self._set(replace(self._state, **changes), action)

    # ------------------------------------------------------------------
    # Form
    # ------------------------------------------------------------------

    def set_input_value(self, value: str) -> None:
        self._update("form/set_input_value", input_value=value)

    def set_selected_mode(self, mode: Union[ChatMode, str]) -> None:
        self._update("form/set_selected_mode", selected_mode=ChatMode(mode))

    def set_selected_participants(self, participants: Iterable[Participant]) -> None:
        self._update(
            "form/set_selected_participants",
            selected_participants=tuple(sort_by_priority(participants)),
        )

    def set_enable_web_search(self, enabled: bool) -> None:
        self._update("form/set_enable_web_search", enable_web_search=enabled)

    # ------------------------------------------------------------------
    # Thread and messages
    # ------------------------------------------------------------------

    def initialize_thread(
        self,
        thread: Thread,
        participants: Iterable[Participant],
        messages: Optional[Sequence[Message]] = None,
    ) -> None:
        """(Re)populate thread, participants and messages in one transition.

        Reloading the thread already in the store merges the incoming
        messages with store messages the server does not know yet.
        Switching threads replaces everything. Streaming state survives
        only while a submission for the same thread is in flight.
        """
        s = self._state
        same_thread = s.thread_id == thread.id
        incoming = tuple(messages or ())

        if same_thread and s.messages:
            next_messages = (
                reducers.merge_server_messages(s.messages, incoming)
                if incoming
                else s.messages
            )
        else:
            next_messages = reducers.deduplicate_messages(
                reducers.reconcile_optimistic(incoming)
            )

        preserve = same_thread and s.is_waiting_for_changelog

        record = s.stream_resumption
        if record is not None and record.thread_id != thread.id:
            logger.info(f"Dropping resumption record for thread {record.thread_id}")
            record = None

        changes: Dict[str, Any] = {
            "thread": thread,
            "participants": tuple(sort_by_priority(participants)),
            "messages": next_messages,
            "pre_searches": tuple(p for p in s.pre_searches if p.thread_id == thread.id),
            "analyses": tuple(a for a in s.analyses if a.thread_id == thread.id),
            "error": None,
            "is_streaming": False,
            "has_initially_loaded": True,
            "enable_web_search": thread.enable_web_search,
            "selected_mode": thread.mode,
            "stream_resumption": record,
            **REGENERATION_STATE_RESET,
        }
        if not preserve:
            changes.update(
                {
                    **STREAMING_STATE_RESET,
                    **MODERATOR_STATE_RESET,
                    **PENDING_MESSAGE_STATE_RESET,
                    **ANIMATION_STATE_RESET,
                    "next_participant_to_trigger": None,
                    "is_waiting_for_changelog": False,
                    "tracking": s.tracking if same_thread else RoundTracking(),
                }
            )

        self._update("thread/initialize_thread", **changes)

    def set_thread(self, thread: Optional[Thread]) -> None:
        """Replace the thread, syncing the form's mode and web-search toggle."""
        changes: Dict[str, Any] = {"thread": thread}
        if thread is not None:
            changes["enable_web_search"] = thread.enable_web_search
            changes["selected_mode"] = thread.mode
        self._update("thread/set_thread", **changes)

    def update_participants(self, participants: Iterable[Participant]) -> None:
        """Replace the participant list between rounds.

        Raises:
            StateError: While a round is streaming
        """
        if self._state.is_streaming:
            raise StateError("Participants cannot change while a round is streaming")
        self._update(
            "thread/update_participants",
            participants=tuple(sort_by_priority(participants)),
        )

    def set_messages(self, messages: Sequence[Message]) -> None:
        """Replace the message list without losing streamed content."""
        self._update(
            "thread/set_messages",
            messages=reducers.merge_messages(self._state.messages, messages),
        )

    def upsert_streaming_message(self, message: Message, insert_only: bool = False) -> None:
        """Insert a message in round order or replace its existing version."""
        self._update(
            "thread/upsert_streaming_message",
            messages=reducers.upsert_message(self._state.messages, message, insert_only),
        )

    def ensure_participant_placeholder(self, round_number: int, participant_index: int) -> str:
        """Insert the empty canonical message a participant streams into.

        Returns:
            The canonical message id.
        """
        s = self._state
        if s.thread_id is None:
            raise StateError("Cannot stream without a thread")

        enabled = s.enabled_participants
        participant = enabled[participant_index] if participant_index < len(enabled) else None
        message = create_participant_message(
            s.thread_id, round_number, participant_index, participant=participant
        )
        self.upsert_streaming_message(message, insert_only=True)
        return message.id

    def ensure_moderator_placeholder(self, round_number: int) -> str:
        s = self._state
        if s.thread_id is None:
            raise StateError("Cannot stream without a thread")
        message = create_moderator_message(s.thread_id, round_number)
        self.upsert_streaming_message(message, insert_only=True)
        return message.id

    def append_stream_chunk(self, message_id: str, chunk: str) -> bool:
        """Append a streamed chunk.

        Returns:
            False when nothing is streaming; the chunk is dropped.
        """
        s = self._state
        if not (s.is_streaming or s.is_moderator_streaming):
            logger.debug(f"Dropping chunk for {message_id}: not streaming")
            return False
        self._update(
            "thread/append_stream_chunk",
            messages=reducers.append_text(s.messages, message_id, chunk),
        )
        return True

    def finish_message(self, message_id: str, finish_reason: str) -> None:
        """Attach a finish reason, tagging empty output as a silent failure."""
        messages = tuple(
            orchestrator.detect_silent_failure(reducers.set_finish_reason(m, finish_reason))
            if m.id == message_id
            else m
            for m in self._state.messages
        )
        self._update("thread/finish_message", messages=messages)

    def fail_message(
        self, message_id: str, error_message: str, category: ErrorCategory
    ) -> None:
        """Mark a message as failed; it stays in its round position."""
        messages = tuple(
            reducers.set_participant_error(m, error_message, category)
            if m.id == message_id
            else m
            for m in self._state.messages
        )
        self._update("thread/fail_message", messages=messages)

    def finalize_message_id(self, temp_id: str, canonical_id: str) -> None:
        self._update(
            "thread/finalize_message_id",
            messages=reducers.finalize_message_id(self._state.messages, temp_id, canonical_id),
        )

    def deduplicate_messages(self) -> None:
        self._update(
            "thread/deduplicate_messages",
            messages=reducers.deduplicate_messages(self._state.messages),
        )

    def set_error(self, error: Optional[Union[str, Exception]]) -> None:
        self._update("thread/set_error", error=str(error) if error is not None else None)

    def clear_error(self) -> None:
        self._update("thread/clear_error", error=None)

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def set_is_streaming(self, value: bool) -> None:
        self._update("flags/set_is_streaming", is_streaming=value)

    def set_current_participant_index(self, index: int) -> None:
        self._update("flags/set_current_participant_index", current_participant_index=index)

    def set_streaming_round_number(self, round_number: Optional[int]) -> None:
        self._update("flags/set_streaming_round_number", streaming_round_number=round_number)

    def set_waiting_to_start_streaming(self, value: bool) -> None:
        self._update("flags/set_waiting_to_start_streaming", waiting_to_start_streaming=value)

    def set_is_moderator_streaming(self, value: bool) -> None:
        self._update("flags/set_is_moderator_streaming", is_moderator_streaming=value)

    def set_is_creating_moderator(self, value: bool) -> None:
        self._update("flags/set_is_creating_moderator", is_creating_moderator=value)

    def complete_moderator_stream(self) -> None:
        self._update("flags/complete_moderator_stream", **MODERATOR_STATE_RESET)

    def set_is_waiting_for_changelog(self, value: bool) -> None:
        self._update("flags/set_is_waiting_for_changelog", is_waiting_for_changelog=value)

    def set_has_sent_pending_message(self, value: bool) -> None:
        self._update("flags/set_has_sent_pending_message", has_sent_pending_message=value)

    def set_is_creating_thread(self, value: bool) -> None:
        self._update("ui/set_is_creating_thread", is_creating_thread=value)

    def set_created_thread_id(self, thread_id: Optional[str]) -> None:
        self._update("ui/set_created_thread_id", created_thread_id=thread_id)

    def set_screen_mode(self, mode: ScreenMode) -> None:
        self._update("screen/set_screen_mode", screen_mode=ScreenMode(mode))

    def set_has_navigated(self, value: bool = True) -> None:
        self._update("screen/set_has_navigated", has_navigated=value)

    def add_pending_animation(self, participant_index: int) -> None:
        self._update(
            "animation/add_pending_animation",
            pending_animations=self._state.pending_animations | {participant_index},
        )

    def complete_animation(self, participant_index: int) -> None:
        self._update(
            "animation/complete_animation",
            pending_animations=self._state.pending_animations - {participant_index},
        )

    # ------------------------------------------------------------------
    # Round lifecycle
    # ------------------------------------------------------------------

    def prepare_for_new_message(
        self,
        message: str,
        participant_ids: Sequence[str] = (),
        file_parts: Sequence = (),
    ) -> int:
        """Stage a new round in one transition.

        The round comes from the authoritative current round: an optimistic
        user message already staged for the new round is reused, otherwise
        the round after the latest message is opened and, on the thread
        screen, an optimistic user message is appended for it.

        Returns:
            The staged round number.
        """
        s = self._state
        round_number, needs_optimistic = round_manager.resolve_round_for_new_message(
            s.messages
        )

        messages = s.messages
        if needs_optimistic and s.screen_mode == ScreenMode.THREAD:
            optimistic = create_user_message(
                f"optimistic-user-r{round_number}-{uuid.uuid4().hex[:8]}",
                message,
                round_number,
                is_optimistic=True,
                extra_parts=tuple(file_parts),
            )
            messages = reducers.upsert_message(messages, optimistic)

        self._update(
            "round/prepare_for_new_message",
            messages=messages,
            is_streaming=False,
            current_participant_index=0,
            waiting_to_start_streaming=False,
            error=None,
            **REGENERATION_STATE_RESET,
            **STREAM_RESUMPTION_STATE_RESET,
            is_moderator_streaming=False,
            tracking=s.tracking.clear_resumption_attempts(),
            pending_message=message,
            expected_participant_ids=tuple(participant_ids) or s.expected_participant_ids,
            has_sent_pending_message=False,
            streaming_round_number=round_number,
            is_waiting_for_changelog=round_number > 0,
        )
        return round_number

    def start_streaming(self, round_number: int, participant_index: int = 0) -> None:
        """Mark the round as streaming, starting at ``participant_index``."""
        self._update(
            "round/start_streaming",
            is_streaming=True,
            streaming_round_number=round_number,
            current_participant_index=participant_index,
            waiting_to_start_streaming=False,
            has_sent_pending_message=True,
            error=None,
        )

    def advance_participant(self, round_number: int, completed_index: int) -> Optional[int]:
        """Commit the move past ``completed_index``.

        The new index is committed before this returns, so it is visible
        before the next participant's stream is requested.

        Returns:
            Next participant index, or None when the round is complete (or
            streaming was stopped).

        Raises:
            OrchestrationError: If the completed participant is not terminal
        """
        s = self._state
        if not s.is_streaming:
            logger.info(
                f"Not advancing past participant {completed_index}: streaming stopped"
            )
            return None

        result = orchestrator.advance(s, round_number, completed_index)
        if result.next_index is None:
            self._update(
                "round/advance_participant",
                is_streaming=False,
                waiting_to_start_streaming=False,
                next_participant_to_trigger=None,
                current_participant_index=completed_index,
            )
            return None

        self._update(
            "round/advance_participant",
            current_participant_index=result.next_index,
            next_participant_to_trigger=result.next_index,
        )
        return result.next_index

    def complete_streaming(self) -> None:
        """Clear all streaming state after a round, in one transition."""
        messages = reducers.deduplicate_messages(
            tuple(reducers.mark_parts_done(m) for m in self._state.messages)
        )
        self._update(
            "round/complete_streaming",
            messages=messages,
            **STREAMING_STATE_RESET,
            **MODERATOR_STATE_RESET,
            **PENDING_MESSAGE_STATE_RESET,
            **REGENERATION_STATE_RESET,
            **STREAM_RESUMPTION_STATE_RESET,
            **ANIMATION_STATE_RESET,
        )

    def stop_streaming(self) -> None:
        """Abandon the streaming round.

        Idempotent. Messages of participants that had not finished are
        removed, so the round keeps exactly the completed participants.
        """
        s = self._state
        already_stopped = (
            not s.is_streaming
            and not s.is_moderator_streaming
            and not s.waiting_to_start_streaming
            and s.current_participant_index == 0
            and s.streaming_round_number is None
        )
        if already_stopped:
            return

        round_number = s.streaming_round_number
        messages = s.messages
        if round_number is not None:
            messages = reducers.remove_messages(
                messages,
                lambda m: (
                    not m.is_user
                    and m.round_number == round_number
                    and not m.is_terminal
                ),
            )

        self._update(
            "round/stop_streaming",
            messages=messages,
            **STREAMING_STATE_RESET,
            **MODERATOR_STATE_RESET,
            next_participant_to_trigger=None,
        )

    def start_regeneration(self, round_number: int) -> None:
        """Reset one round so it can be replayed.

        Clears error state, the round's dedup tracking, resumption state and
        the round's assistant messages, pre-search and analysis. The user
        message stays.
        """
        s = self._state
        participant_ids = tuple(p.model_id for p in s.selected_participants) or tuple(
            p.model_id for p in s.enabled_participants
        )
        messages = reducers.remove_messages(
            s.messages, lambda m: not m.is_user and m.round_number == round_number
        )
        self._update(
            "round/start_regeneration",
            messages=messages,
            **{
                **STREAMING_STATE_RESET,
                **MODERATOR_STATE_RESET,
                **PENDING_MESSAGE_STATE_RESET,
                **STREAM_RESUMPTION_STATE_RESET,
                "pre_searches": tuple(
                    p for p in s.pre_searches if p.round_number != round_number
                ),
                "analyses": tuple(a for a in s.analyses if a.round_number != round_number),
                "tracking": s.tracking.clear_round(round_number),
                "error": None,
                "is_regenerating": True,
                "regenerating_round_number": round_number,
                "expected_participant_ids": participant_ids,
            },
        )

    def complete_regeneration(self, round_number: int) -> None:
        self._update(
            "round/complete_regeneration",
            **STREAMING_STATE_RESET,
            **MODERATOR_STATE_RESET,
            **PENDING_MESSAGE_STATE_RESET,
            **REGENERATION_STATE_RESET,
        )

    def reset_to_new_chat(self, preferences: Optional[Dict[str, Any]] = None) -> None:
        """Clear everything, seeding the form from ``preferences``.

        Recognized keys: ``selected_mode``, ``selected_model_ids`` and
        ``enable_web_search``.
        """
        preferences = preferences or {}
        model_ids = preferences.get("selected_model_ids") or ()
        selected = tuple(
            Participant(id=model_id, model_id=model_id, priority=i)
            for i, model_id in enumerate(model_ids)
        )
        try:
            mode = ChatMode(preferences.get("selected_mode") or DEFAULT_CHAT_MODE)
        except ValueError:
            mode = DEFAULT_CHAT_MODE

        self._update(
            "round/reset_to_new_chat",
            **{
                **COMPLETE_RESET_STATE,
                "selected_participants": selected or FORM_DEFAULTS["selected_participants"],
                "selected_mode": mode,
                "enable_web_search": preferences.get(
                    "enable_web_search", FORM_DEFAULTS["enable_web_search"]
                ),
            },
        )

    def reset_to_overview(self) -> None:
        self._update("round/reset_to_overview", **COMPLETE_RESET_STATE)

    def reset_for_thread_navigation(self) -> None:
        """Drop all per-thread state when moving to another thread.

        Form state and screen mode are kept.
        """
        self._update("round/reset_for_thread_navigation", **THREAD_NAVIGATION_RESET_STATE)

    # ------------------------------------------------------------------
    # Pre-search records
    # ------------------------------------------------------------------

    def _pre_search_index(self, round_number: int) -> Optional[int]:
        for i, record in enumerate(self._state.pre_searches):
            if record.round_number == round_number:
                return i
        return None

    def _replace_pre_search(self, index: int, record: PreSearch, action: str) -> None:
        records = list(self._state.pre_searches)
        records[index] = record
        self._update(action, pre_searches=tuple(records))

    def add_pre_search(self, record: PreSearch) -> None:
        """Add a round's pre-search record.

        A streaming record replaces a pending one for the same round; any
        other duplicate is ignored.
        """
        index = self._pre_search_index(record.round_number)
        if index is None:
            self._update(
                "pre_search/add_pre_search",
                pre_searches=self._state.pre_searches + (record,),
            )
            return

        existing = self._state.pre_searches[index]
        if (
            existing.status == MessageStatus.PENDING
            and record.status == MessageStatus.STREAMING
        ):
            self._replace_pre_search(index, record, "pre_search/add_pre_search")
            return

        logger.debug(f"Ignoring duplicate pre-search for round {record.round_number}")

    def update_pre_search_status(self, round_number: int, status: MessageStatus) -> None:
        index = self._pre_search_index(round_number)
        if index is None:
            return
        existing = self._state.pre_searches[index]
        status = MessageStatus(status)
        self.validator.validate_status_transition(existing.status, status, existing.id)
        completed_at = utc_now() if status.is_terminal else existing.completed_at
        self._replace_pre_search(
            index,
            replace(existing, status=status, completed_at=completed_at),
            "pre_search/update_pre_search_status",
        )

    def update_pre_search_data(self, round_number: int, data: PreSearchResult) -> None:
        """Attach search results and mark the record complete."""
        index = self._pre_search_index(round_number)
        if index is None:
            return
        existing = self._state.pre_searches[index]
        self.validator.validate_status_transition(
            existing.status, MessageStatus.COMPLETE, existing.id
        )
        self._replace_pre_search(
            index,
            replace(
                existing,
                search_data=data,
                status=MessageStatus.COMPLETE,
                completed_at=utc_now(),
            ),
            "pre_search/update_pre_search_data",
        )

    def mark_pre_search_failed(self, round_number: int, error_message: str) -> None:
        index = self._pre_search_index(round_number)
        if index is None:
            return
        existing = self._state.pre_searches[index]
        if existing.status.is_terminal:
            return
        self._replace_pre_search(
            index,
            replace(
                existing,
                status=MessageStatus.FAILED,
                error_message=error_message,
                completed_at=utc_now(),
            ),
            "pre_search/mark_pre_search_failed",
        )

    def remove_pre_search(self, round_number: int) -> None:
        self._update(
            "pre_search/remove_pre_search",
            pre_searches=tuple(
                p for p in self._state.pre_searches if p.round_number != round_number
            ),
        )

    def clear_all_pre_searches(self) -> None:
        self._update(
            "pre_search/clear_all_pre_searches",
            pre_searches=(),
            tracking=replace(self._state.tracking, triggered_pre_search_rounds=frozenset()),
        )

    def check_stuck_pre_searches(self, now: Optional[datetime] = None) -> List[int]:
        """Fail pre-searches stuck in pending/streaming past the timeout.

        Returns:
            Rounds whose record was failed.
        """
        now = now or utc_now()
        timeout = self.config.timeouts.pre_search_timeout
        stuck: List[int] = []
        records = []
        for record in self._state.pre_searches:
            if record.status.is_in_progress and now - record.created_at > timeout:
                stuck.append(record.round_number)
                record = replace(
                    record,
                    status=MessageStatus.FAILED,
                    error_message="Pre-search timed out",
                    completed_at=now,
                )
            records.append(record)

        if stuck:
            logger.warning(f"Pre-search timed out for rounds {stuck}")
            self._update("pre_search/check_stuck_pre_searches", pre_searches=tuple(records))
        return stuck

    # ------------------------------------------------------------------
    # Analysis records
    # ------------------------------------------------------------------

    def _analysis_index(self, round_number: int) -> Optional[int]:
        for i, analysis in enumerate(self._state.analyses):
            if analysis.round_number == round_number:
                return i
        return None

    def _replace_analysis(self, index: int, analysis: Analysis, action: str) -> None:
        analyses = list(self._state.analyses)
        analyses[index] = analysis
        self._update(action, analyses=tuple(analyses))

    def get_analysis(self, round_number: int) -> Optional[Analysis]:
        index = self._analysis_index(round_number)
        return self._state.analyses[index] if index is not None else None

    def create_pending_analysis(
        self,
        round_number: int,
        user_question: Optional[str] = None,
        participant_message_ids: Optional[Sequence[str]] = None,
        mode: Optional[ChatMode] = None,
    ) -> Analysis:
        """Create the round's pending analysis, or return the existing one."""
        existing = self.get_analysis(round_number)
        if existing is not None:
            return existing

        s = self._state
        if s.thread_id is None:
            raise StateError("Cannot create an analysis without a thread")

        if participant_message_ids is None:
            by_index = get_participant_messages_for_round(s.messages, round_number)
            participant_message_ids = [by_index[i].id for i in sorted(by_index)]
        if user_question is None:
            user_message = get_user_message_for_round(s.messages, round_number)
            user_question = user_message.text if user_message else ""

        analysis = Analysis(
            id=moderator_message_id(s.thread_id, round_number),
            thread_id=s.thread_id,
            round_number=round_number,
            mode=mode or (s.thread.mode if s.thread else s.selected_mode),
            user_question=user_question,
            participant_message_ids=tuple(participant_message_ids),
        )
        self.add_analysis(analysis)
        return analysis

    def add_analysis(self, analysis: Analysis) -> None:
        self.validator.validate_analysis(analysis, self._state.messages)
        index = self._analysis_index(analysis.round_number)
        if index is None:
            self._update("analysis/add_analysis", analyses=self._state.analyses + (analysis,))
            return
        existing = self._state.analyses[index]
        if (
            existing.status == MessageStatus.PENDING
            and analysis.status == MessageStatus.STREAMING
        ):
            self._replace_analysis(index, analysis, "analysis/add_analysis")
            return
        logger.debug(f"Ignoring duplicate analysis for round {analysis.round_number}")

    def update_analysis_status(self, round_number: int, status: MessageStatus) -> None:
        index = self._analysis_index(round_number)
        if index is None:
            return
        existing = self._state.analyses[index]
        status = MessageStatus(status)
        self.validator.validate_status_transition(existing.status, status, existing.id)
        completed_at = utc_now() if status.is_terminal else existing.completed_at
        self._replace_analysis(
            index,
            replace(existing, status=status, completed_at=completed_at),
            "analysis/update_analysis_status",
        )

    def update_analysis_data(self, round_number: int, data: Dict[str, Any]) -> None:
        index = self._analysis_index(round_number)
        if index is None:
            return
        existing = self._state.analyses[index]
        self.validator.validate_status_transition(
            existing.status, MessageStatus.COMPLETE, existing.id
        )
        self._replace_analysis(
            index,
            replace(
                existing,
                analysis_data=data,
                status=MessageStatus.COMPLETE,
                completed_at=utc_now(),
            ),
            "analysis/update_analysis_data",
        )

    def update_analysis_error(self, round_number: int, error_message: str) -> None:
        index = self._analysis_index(round_number)
        if index is None:
            return
        existing = self._state.analyses[index]
        self._replace_analysis(
            index,
            replace(
                existing,
                status=MessageStatus.FAILED,
                error_message=error_message,
                completed_at=utc_now(),
            ),
            "analysis/update_analysis_error",
        )

    def remove_analysis(self, round_number: int) -> None:
        """Remove a round's analysis so the moderator can be re-triggered."""
        s = self._state
        self._update(
            "analysis/remove_analysis",
            analyses=tuple(a for a in s.analyses if a.round_number != round_number),
            tracking=s.tracking.clear_moderator_tracking(round_number)
            .clear_moderator_stream_tracking(round_number),
        )

    def clear_all_analyses(self) -> None:
        self._update("analysis/clear_all_analyses", analyses=())

    def check_stuck_analyses(self, now: Optional[datetime] = None) -> List[int]:
        """Fail analyses stuck in pending/streaming past the timeout."""
        now = now or utc_now()
        timeout = self.config.timeouts.analysis_timeout
        stuck: List[int] = []
        analyses = []
        for analysis in self._state.analyses:
            if analysis.status.is_in_progress and now - analysis.created_at > timeout:
                stuck.append(analysis.round_number)
                analysis = replace(
                    analysis,
                    status=MessageStatus.FAILED,
                    error_message="Analysis timed out",
                    completed_at=now,
                )
            analyses.append(analysis)

        if stuck:
            logger.warning(f"Analysis timed out for rounds {stuck}")
            self._update("analysis/check_stuck_analyses", analyses=tuple(analyses))
        return stuck

    # ------------------------------------------------------------------
    # Deduplication guards
    # ------------------------------------------------------------------

    def try_mark_pre_search_triggered(self, round_number: int) -> bool:
        tracking, first = self._state.tracking.try_mark_pre_search_triggered(round_number)
        if first:
            self._update("tracking/try_mark_pre_search_triggered", tracking=tracking)
        else:
            logger.info(f"Pre-search for round {round_number} already triggered")
        return first

    def has_pre_search_been_triggered(self, round_number: int) -> bool:
        return self._state.tracking.has_pre_search_been_triggered(round_number)

    def clear_pre_search_tracking(self, round_number: int) -> None:
        self._update(
            "tracking/clear_pre_search_tracking",
            tracking=self._state.tracking.clear_pre_search_tracking(round_number),
        )

    def try_mark_moderator_created(self, round_number: int) -> bool:
        tracking, first = self._state.tracking.try_mark_moderator_created(round_number)
        if first:
            self._update("tracking/try_mark_moderator_created", tracking=tracking)
        else:
            logger.info(f"Moderator for round {round_number} already created")
        return first

    def has_moderator_been_created(self, round_number: int) -> bool:
        return self._state.tracking.has_moderator_been_created(round_number)

    def clear_moderator_tracking(self, round_number: int) -> None:
        self._update(
            "tracking/clear_moderator_tracking",
            tracking=self._state.tracking.clear_moderator_tracking(round_number),
        )

    def try_mark_moderator_stream_triggered(self, moderator_id: str, round_number: int) -> bool:
        tracking, first = self._state.tracking.try_mark_moderator_stream_triggered(
            moderator_id, round_number
        )
        if first:
            self._update("tracking/try_mark_moderator_stream_triggered", tracking=tracking)
        else:
            logger.info(f"Moderator stream {moderator_id} already triggered")
        return first

    def has_moderator_stream_been_triggered(self, moderator_id: str, round_number: int) -> bool:
        return self._state.tracking.has_moderator_stream_been_triggered(
            moderator_id, round_number
        )

    def clear_moderator_stream_tracking(self, round_number: int) -> None:
        self._update(
            "tracking/clear_moderator_stream_tracking",
            tracking=self._state.tracking.clear_moderator_stream_tracking(round_number),
        )

    # ------------------------------------------------------------------
    # Stream resumption
    # ------------------------------------------------------------------

    def set_stream_resumption_state(self, record: Optional[StreamResumptionState]) -> None:
        self._update("stream_resumption/set_stream_resumption_state", stream_resumption=record)

    def needs_stream_resumption(self, now: Optional[datetime] = None) -> bool:
        s = self._state
        return resumption.needs_stream_resumption(
            s.stream_resumption,
            s.thread_id,
            len(s.enabled_participants),
            now,
            self.config.timeouts.stream_resumption_ttl,
        )

    def is_stream_resumption_stale(self, now: Optional[datetime] = None) -> bool:
        return resumption.is_stale(
            self._state.stream_resumption, now, self.config.timeouts.stream_resumption_ttl
        )

    def is_stream_resumption_valid(self) -> bool:
        s = self._state
        return resumption.is_valid(
            s.stream_resumption, s.thread_id, len(s.enabled_participants)
        )

    def needs_message_sync(self) -> bool:
        s = self._state
        return resumption.needs_message_sync(s.stream_resumption, s.thread_id)

    def mark_resumption_attempted(self, round_number: int, participant_index: int) -> bool:
        """Return True exactly once per ``(round_number, participant_index)``."""
        tracking, first = self._state.tracking.try_mark_resumption_attempted(
            round_number, participant_index
        )
        if first:
            self._update("stream_resumption/mark_resumption_attempted", tracking=tracking)
        return first

    def handle_resumed_stream_complete(
        self, round_number: int, participant_index: int
    ) -> Optional[int]:
        """Continue the round after a resumed participant stream ended.

        Returns:
            Next participant index to trigger, or None when the round is
            complete.
        """
        next_index = orchestrator.next_participant_index(
            self._state.participants, participant_index
        )
        if next_index is not None:
            self._update(
                "stream_resumption/handle_resumed_stream_complete",
                stream_resumption=None,
                next_participant_to_trigger=next_index,
                current_participant_index=next_index,
                streaming_round_number=round_number,
                waiting_to_start_streaming=True,
            )
        else:
            self._update(
                "stream_resumption/handle_resumed_stream_complete",
                stream_resumption=None,
                next_participant_to_trigger=None,
                waiting_to_start_streaming=False,
                is_streaming=False,
                streaming_round_number=round_number,
            )
        return next_index

    def handle_stream_resumption_failure(self, error: Optional[Exception] = None) -> None:
        """Drop the resumption record so normal flow continues.

        If the resumed stream had already started, its unfinished message is
        removed and streaming state is cleared in the same transition.
        Attempted ``(round, participant_index)`` pairs are kept.
        """
        if error is not None:
            logger.warning(f"Stream resumption failed: {error}")
        s = self._state
        changes: Dict[str, Any] = {
            **STREAM_RESUMPTION_STATE_RESET,
            "waiting_to_start_streaming": False,
        }
        if s.is_streaming:
            round_number = s.streaming_round_number
            changes["messages"] = reducers.remove_messages(
                s.messages,
                lambda m: (
                    not m.is_user
                    and m.round_number == round_number
                    and not m.is_terminal
                ),
            )
            changes.update(STREAMING_STATE_RESET)
        self._update("stream_resumption/handle_stream_resumption_failure", **changes)

    def clear_stream_resumption(self) -> None:
        self._update(
            "stream_resumption/clear_stream_resumption",
            **STREAM_RESUMPTION_STATE_RESET,
            tracking=self._state.tracking.clear_resumption_attempts(),
        )

    # ------------------------------------------------------------------
    # Derived queries
    # ------------------------------------------------------------------

    @property
    def current_round(self) -> int:
        return self._state.current_round

    @property
    def enabled_participants(self) -> List[Participant]:
        return self._state.enabled_participants

    def is_round_complete(self, round_number: Optional[int] = None) -> bool:
        """Whether every enabled participant has a terminal message."""
        s = self._state
        if round_number is None:
            round_number = round_manager.get_gating_round(s.messages, s.streaming_round_number)
        return orchestrator.all_participants_responded(s.messages, s.participants, round_number)

    def flow_snapshot(self) -> FlowContext:
        return build_flow_context(self._state)

    def flow_state(self) -> FlowState:
        return determine_flow_state(self.flow_snapshot())
