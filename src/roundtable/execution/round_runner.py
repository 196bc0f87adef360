"""Round driver for Roundtable.

``RoundRunner`` plays one round against the collaborators: it stages the
round, runs the web-search pre-step, streams each participant strictly in
order and finally hands the round to the moderator when the flow state
machine asks for it. The store is synchronous; the runner awaits only at
collaborator boundaries.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from langchain_core.messages import BaseMessage, HumanMessage

from roundtable.config.models import FlowConfig
from roundtable.execution.contracts import (
    ModeratorStreamer,
    ParticipantStreamer,
    SearchProvider,
    StreamFailed,
    StreamFinished,
    drain_stream,
)
from roundtable.flow.orchestrator import orchestrator
from roundtable.flow.pre_search import (
    get_effective_web_search_enabled,
    get_pre_search_for_round,
    should_wait_for_pre_search_with_timeout,
)
from roundtable.flow.state_machine import FlowController
from roundtable.state.schema import (
    FlowAction,
    FlowActionType,
    MessageStatus,
    PreSearch,
    utc_now,
)
from roundtable.state.utils import (
    create_user_message,
    get_moderator_message_for_round,
    get_user_message_for_round,
    user_message_id,
)
from roundtable.utils.errors import categorize_error
from roundtable.utils.exceptions import RoundtableError, StateError
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RoundResult:
    """What happened to a round played by ``RoundRunner``."""

    round_number: int
    completed: bool = False
    stopped: bool = False
    moderator_status: Optional[MessageStatus] = None
    actions: List[FlowAction] = field(default_factory=list)


class RoundRunner:
    """Drives rounds of a loaded thread against its collaborators.

    Key responsibilities:
    - Gate participant streaming on the round's pre-search
    - Commit each participant index before requesting its stream
    - Record participant failures on their message and keep going
    - Turn flow state machine actions into moderator runs
    """

    def __init__(
        self,
        store,
        streamer: ParticipantStreamer,
        search_provider: Optional[SearchProvider] = None,
        moderator: Optional[ModeratorStreamer] = None,
        config: Optional[FlowConfig] = None,
        on_action: Optional[Callable[[FlowAction], None]] = None,
    ):
        """Initialize the runner.

        Args:
            store: The ``ChatStore`` of the loaded thread
            streamer: Participant token streams
            search_provider: Web search for the pre-step, optional
            moderator: Synthesis stream, optional
            config: Flow configuration, defaults to the store's
            on_action: Called with navigation and cache actions
        """
        self.store = store
        self.streamer = streamer
        self.search_provider = search_provider
        self.moderator = moderator
        self.config = config or store.config
        self.on_action = on_action
        self.flow = FlowController()
        self._actions: List[FlowAction] = []

    # ------------------------------------------------------------------
    # Flow actions
    # ------------------------------------------------------------------

    def _on_state_change(self, state, prev, action_name: str) -> None:
        action = self.flow.evaluate(state)
        if action is not None:
            logger.debug(f"Flow action {action.type.value} after {action_name}")
            self._actions.append(action)

    def _take_action(self, action_type: FlowActionType) -> Optional[FlowAction]:
        for i, action in enumerate(self._actions):
            if action.type == action_type:
                return self._actions.pop(i)
        return None

    def _dispatch_external_actions(self, result: RoundResult) -> None:
        while self._actions:
            action = self._actions.pop(0)
            result.actions.append(action)
            if self.on_action is not None:
                self.on_action(action)
            if action.type == FlowActionType.NAVIGATE:
                self.store.set_has_navigated(True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_round(self, text: str, participant_ids=()) -> RoundResult:
        """Play a new round for ``text``.

        Raises:
            StateError: If no thread is loaded or a round is already streaming
        """
        state = self.store.state
        if state.thread_id is None:
            raise StateError("Cannot start a round without a thread")
        if state.is_streaming or state.is_moderator_streaming:
            raise StateError("A round is already streaming")

        unsubscribe = self.store.subscribe(self._on_state_change)
        try:
            round_number = self.store.prepare_for_new_message(text, participant_ids)
            thread_id = self.store.state.thread_id
            # Authoritative user message supersedes the optimistic one
            self.store.upsert_streaming_message(
                create_user_message(user_message_id(thread_id, round_number), text, round_number)
            )
            if self.store.state.is_waiting_for_changelog:
                self.store.set_is_waiting_for_changelog(False)

            return await self._play(round_number, text)
        finally:
            unsubscribe()

    async def regenerate_round(self, round_number: int) -> RoundResult:
        """Replay ``round_number`` with the same user message."""
        user_message = get_user_message_for_round(self.store.state.messages, round_number)
        if user_message is None:
            raise StateError(f"Round {round_number} has no user message to regenerate")

        unsubscribe = self.store.subscribe(self._on_state_change)
        try:
            self.store.start_regeneration(round_number)
            result = await self._play(round_number, user_message.text)
            if not result.stopped:
                self.store.complete_regeneration(round_number)
            return result
        finally:
            unsubscribe()

    async def continue_round(self) -> RoundResult:
        """Finish a round whose stream was resumed after a reload.

        Streams the participants after the resumed one, starting at
        ``next_participant_to_trigger``, then hands the round to the
        moderator. When the resumed participant was the last one, only the
        moderator runs. The round's pre-search is not repeated.

        Raises:
            StateError: If there is no interrupted round to continue
        """
        state = self.store.state
        round_number = state.streaming_round_number
        if state.thread_id is None or round_number is None:
            raise StateError("No interrupted round to continue")
        if state.is_moderator_streaming:
            raise StateError("The moderator is already streaming")

        next_index = state.next_participant_to_trigger
        unsubscribe = self.store.subscribe(self._on_state_change)
        try:
            # A resumed last participant leaves the round at the moderator edge
            self.flow.reset()
            self._on_state_change(state, None, "round/continue_round")
            if next_index is not None:
                logger.info(
                    f"Continuing round {round_number} at participant {next_index}"
                )
                self.store.start_streaming(round_number, next_index)
            return await self._finish_round(
                round_number,
                self._search_context(round_number),
                stream_participants=next_index is not None,
            )
        finally:
            unsubscribe()

    # ------------------------------------------------------------------
    # Round phases
    # ------------------------------------------------------------------

    async def _play(self, round_number: int, text: str) -> RoundResult:
        search_context = await self._run_pre_search(round_number, text)
        self.store.start_streaming(round_number, 0)
        return await self._finish_round(round_number, search_context)

    async def _finish_round(
        self,
        round_number: int,
        search_context: List[BaseMessage],
        stream_participants: bool = True,
    ) -> RoundResult:
        result = RoundResult(round_number=round_number)

        if stream_participants:
            stopped = await self._stream_participants(round_number, search_context)
            if stopped:
                logger.info(f"Round {round_number} stopped")
                result.stopped = True
                self._dispatch_external_actions(result)
                return result

        create = self._take_action(FlowActionType.CREATE_MODERATOR)
        if create is not None and self.moderator is None:
            logger.info(f"No moderator configured, round {round_number} ends unsynthesised")
        elif create is not None:
            result.moderator_status = await self._run_moderator(round_number)
            if result.moderator_status is None:
                result.stopped = True
                self._dispatch_external_actions(result)
                return result

        result.completed = self.store.is_round_complete(round_number)
        self.store.complete_streaming()
        self._dispatch_external_actions(result)
        logger.info(
            f"Round {round_number} finished: completed={result.completed}, "
            f"moderator={result.moderator_status.value if result.moderator_status else None}"
        )
        return result

    async def _run_pre_search(self, round_number: int, text: str) -> List[BaseMessage]:
        """Run or await the round's pre-search; failures degrade to no context."""
        state = self.store.state
        enabled = (
            get_effective_web_search_enabled(state.thread, state.enable_web_search)
            and self.search_provider is not None
        )
        if not enabled:
            return []

        if self.store.try_mark_pre_search_triggered(round_number):
            await self._execute_pre_search(round_number, text)
        else:
            await self._wait_for_pre_search(round_number)

        return self._search_context(round_number)

    def _search_context(self, round_number: int) -> List[BaseMessage]:
        record = get_pre_search_for_round(self.store.state.pre_searches, round_number)
        if record is None or record.search_data is None:
            return []
        return [
            HumanMessage(
                content=f"Web search results:\n{record.search_data.summary}",
                name="web_search",
            )
        ]

    async def _execute_pre_search(self, round_number: int, text: str) -> None:
        thread_id = self.store.state.thread_id
        self.store.add_pre_search(
            PreSearch(
                id=f"{thread_id}_r{round_number}_presearch",
                thread_id=thread_id,
                round_number=round_number,
                user_query=text,
                status=MessageStatus.PENDING,
            )
        )
        self.store.update_pre_search_status(round_number, MessageStatus.STREAMING)

        timeout = self.config.timeouts.pre_search_timeout_sec
        try:
            data = await asyncio.wait_for(
                self.search_provider.search(text, round_number), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Pre-search for round {round_number} timed out after {timeout}s")
            self.store.mark_pre_search_failed(round_number, "Pre-search timed out")
            return
        except (RoundtableError, ConnectionError) as e:
            logger.warning(f"Pre-search for round {round_number} failed: {e}")
            self.store.mark_pre_search_failed(round_number, str(e))
            return

        self.store.update_pre_search_data(round_number, data)

    async def _wait_for_pre_search(self, round_number: int) -> None:
        """Wait for a pre-search started elsewhere, failing it on timeout."""
        settled = asyncio.Event()

        def check(state, prev=None, action=None) -> None:
            waiting = should_wait_for_pre_search_with_timeout(
                True,
                state.pre_searches,
                round_number,
                utc_now(),
                self.config.timeouts.pre_search_timeout,
            )
            if not waiting:
                settled.set()

        unsubscribe = self.store.subscribe(check)
        try:
            check(self.store.state)
            await asyncio.wait_for(
                settled.wait(), timeout=self.config.timeouts.pre_search_timeout_sec
            )
        except asyncio.TimeoutError:
            logger.warning(f"Gave up waiting for pre-search of round {round_number}")
            self.store.mark_pre_search_failed(round_number, "Pre-search timed out")
        finally:
            unsubscribe()

    async def _stream_participants(
        self, round_number: int, search_context: List[BaseMessage]
    ) -> bool:
        """Stream every enabled participant in order.

        Returns:
            True when streaming was stopped before the round finished.
        """
        index: Optional[int] = self.store.state.current_participant_index
        while index is not None:
            state = self.store.state
            if not state.is_streaming:
                return True

            participant = state.enabled_participants[index]
            message_id = self.store.ensure_participant_placeholder(round_number, index)
            context = orchestrator.build_participant_context(
                self.store.state.messages, round_number, index
            )
            messages = (
                orchestrator.history_to_langchain_messages(state.messages, round_number)
                + search_context
                + orchestrator.to_langchain_messages(context, state.participants)
            )

            try:
                outcome = await drain_stream(
                    self.store,
                    message_id,
                    self.streamer.stream(participant, messages, round_number),
                )
            except Exception as e:
                category = categorize_error(e)
                logger.error(
                    f"Participant {index} ({participant.model_id}) raised "
                    f"{type(e).__name__}: {e}"
                )
                self.store.fail_message(message_id, str(e) or type(e).__name__, category)
                outcome = StreamFailed(category=category, message=str(e))

            if outcome is None:
                return True
            if isinstance(outcome, StreamFailed):
                logger.warning(
                    f"Participant {index} failed in round {round_number}: "
                    f"{outcome.category.value}"
                )

            index = self.store.advance_participant(round_number, index)

        return False

    async def _run_moderator(self, round_number: int) -> Optional[MessageStatus]:
        """Create and stream the round's synthesis.

        Returns:
            Final analysis status, or None when streaming was stopped.
        """
        if not self.store.try_mark_moderator_created(round_number):
            analysis = self.store.get_analysis(round_number)
            return analysis.status if analysis else None

        self.store.set_is_creating_moderator(True)
        analysis = self.store.create_pending_analysis(round_number)
        self.store.set_is_creating_moderator(False)

        if not self.store.try_mark_moderator_stream_triggered(analysis.id, round_number):
            return self.store.get_analysis(round_number).status

        state = self.store.state
        context = orchestrator.build_participant_context(
            state.messages, round_number, len(state.enabled_participants)
        )
        messages = orchestrator.to_langchain_messages(context, state.participants)

        self.store.update_analysis_status(round_number, MessageStatus.STREAMING)
        self.store.set_is_moderator_streaming(True)
        message_id = self.store.ensure_moderator_placeholder(round_number)

        try:
            outcome = await drain_stream(
                self.store, message_id, self.moderator.stream(messages, round_number)
            )
        except Exception as e:
            category = categorize_error(e)
            logger.error(f"Moderator for round {round_number} raised {type(e).__name__}: {e}")
            self.store.fail_message(message_id, str(e) or type(e).__name__, category)
            outcome = StreamFailed(category=category, message=str(e))

        if outcome is None:
            self.store.update_analysis_error(round_number, "Moderator stream stopped")
            return None

        if isinstance(outcome, StreamFinished):
            moderator_message = get_moderator_message_for_round(
                self.store.state.messages, round_number
            )
            self.store.update_analysis_data(
                round_number,
                {
                    "summary": moderator_message.text if moderator_message else "",
                    "finish_reason": outcome.finish_reason,
                },
            )
        else:
            self.store.update_analysis_error(round_number, outcome.message)

        self.store.complete_moderator_stream()
        return self.store.get_analysis(round_number).status
