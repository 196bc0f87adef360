"""Tests for ChatStore."""

from datetime import timedelta

import pytest

from roundtable.config.models import FlowConfig
from roundtable.state.schema import (
    Analysis,
    ChatMode,
    ErrorCategory,
    FlowState,
    MessageStatus,
    PreSearch,
    PreSearchResult,
    ScreenMode,
    StreamResumptionState,
    StreamStatus,
    Thread,
    utc_now,
)
from roundtable.state.store import ChatState, ChatStore
from roundtable.state.utils import (
    create_participant_message,
    create_user_message,
    get_user_message_for_round,
    participant_message_id,
)
from roundtable.utils.exceptions import OrchestrationError, StateError, ValidationError
from tests.helpers.factories import THREAD_ID, make_participants


def answer(store: ChatStore, round_number: int, index: int, text: str = "answer") -> str:
    """Stream a participant's full answer into the store."""
    message_id = store.ensure_participant_placeholder(round_number, index)
    store.append_stream_chunk(message_id, text)
    store.finish_message(message_id, "stop")
    return message_id


class TestChatStoreCore:
    """Test snapshot and subscription behavior."""

    def test_initial_state(self):
        store = ChatStore()

        assert store.state == ChatState()
        assert store.get_state() is store.state
        assert store.current_round == 0
        assert store.state.thread_id is None

    def test_stores_are_independent(self):
        first, second = ChatStore(), ChatStore()

        first.set_input_value("hello")

        assert second.state.input_value == ""

    def test_subscribe_receives_next_prev_and_action(self):
        store = ChatStore()
        calls = []
        unsubscribe = store.subscribe(lambda next_, prev, action: calls.append((next_, prev, action)))

        store.set_input_value("hi")
        unsubscribe()
        store.set_input_value("again")

        assert len(calls) == 1
        next_state, prev_state, action = calls[0]
        assert next_state.input_value == "hi"
        assert prev_state.input_value == ""
        assert action == "form/set_input_value"

    def test_unsubscribe_twice_is_safe(self):
        store = ChatStore()
        unsubscribe = store.subscribe(lambda *args: None)
        unsubscribe()
        unsubscribe()

    def test_form_operations(self, participants):
        store = ChatStore()

        store.set_selected_mode("DEBATING")
        store.set_selected_participants(reversed(participants))
        store.set_enable_web_search(True)

        assert store.state.selected_mode == ChatMode.DEBATING
        assert [p.priority for p in store.state.selected_participants] == [0, 1, 2]
        assert store.state.enable_web_search

    def test_set_error_stringifies(self):
        store = ChatStore()

        store.set_error(RuntimeError("boom"))
        assert store.state.error == "boom"

        store.clear_error()
        assert store.state.error is None


class TestInitializeThread:
    """Test loading and reloading threads."""

    def test_populates_thread(self, store, thread, participants):
        assert store.state.thread == thread
        assert store.state.participants == tuple(participants)
        assert store.state.has_initially_loaded
        assert store.state.thread_id == THREAD_ID

    def test_syncs_form_from_thread(self):
        store = ChatStore()
        thread = Thread(id="t", mode=ChatMode.SOLVING, enable_web_search=True)

        store.initialize_thread(thread, make_participants(1, "t"))

        assert store.state.selected_mode == ChatMode.SOLVING
        assert store.state.enable_web_search

    def test_reload_keeps_unpersisted_messages(self, store, completed_round):
        server = completed_round(0)
        store.initialize_thread(store.state.thread, store.state.participants, server)
        store.prepare_for_new_message("next question")

        store.initialize_thread(store.state.thread, store.state.participants, server)

        assert len(store.state.messages) == len(server) + 1
        assert store.state.messages[-1].is_optimistic

    def test_switching_threads_replaces_messages(self, store, completed_round):
        store.set_messages(completed_round(0))

        store.initialize_thread(Thread(id="other"), make_participants(2, "other"), [])

        assert store.state.messages == ()
        assert store.state.thread_id == "other"

    def test_drops_resumption_record_for_other_thread(self, store):
        store.set_stream_resumption_state(
            StreamResumptionState(
                stream_id="s", thread_id=THREAD_ID, round_number=0, participant_index=0
            )
        )

        store.initialize_thread(Thread(id="other"), make_participants(2, "other"), [])

        assert store.state.stream_resumption is None

    def test_reconciles_optimistic_duplicates(self):
        store = ChatStore()
        messages = [
            create_user_message("opt", "q", 0, is_optimistic=True),
            create_user_message(f"{THREAD_ID}_r0_user", "q", 0),
        ]

        store.initialize_thread(Thread(id=THREAD_ID), make_participants(1), messages)

        assert [m.id for m in store.state.messages] == [f"{THREAD_ID}_r0_user"]

    def test_update_participants_rejected_while_streaming(self, store, participants):
        store.start_streaming(0)

        with pytest.raises(StateError):
            store.update_participants(participants[:1])

    def test_update_participants_between_rounds(self, store, participants):
        store.update_participants(participants[:2])
        assert len(store.enabled_participants) == 2


class TestPrepareForNewMessage:
    """Test staging of rounds and optimistic user messages."""

    def test_first_round_is_zero(self, store):
        round_number = store.prepare_for_new_message("hello", ["model-0"])

        assert round_number == 0
        assert store.state.streaming_round_number == 0
        assert store.state.pending_message == "hello"
        assert store.state.expected_participant_ids == ("model-0",)
        assert not store.state.is_waiting_for_changelog
        assert not store.state.has_sent_pending_message

    def test_follow_up_round_waits_for_changelog(self, store, completed_round):
        store.set_messages(completed_round(0))

        round_number = store.prepare_for_new_message("follow up")

        assert round_number == 1
        assert store.state.is_waiting_for_changelog

    def test_optimistic_message_appended_once(self, store, completed_round):
        store.set_messages(completed_round(0))

        first = store.prepare_for_new_message("again")
        second = store.prepare_for_new_message("again")

        round_users = [m for m in store.state.messages if m.is_user and m.round_number == 1]
        assert first == second == 1
        assert len(round_users) == 1
        assert round_users[0].is_optimistic
        assert round_users[0].id.startswith("optimistic-user-r1-")

    def test_no_optimistic_message_on_overview(self):
        store = ChatStore()
        store.initialize_thread(Thread(id=THREAD_ID), make_participants(2), [])

        store.prepare_for_new_message("hello")

        assert store.state.messages == ()

    def test_authoritative_user_message_replaces_optimistic(self, store):
        round_number = store.prepare_for_new_message("hello")

        store.upsert_streaming_message(
            create_user_message(f"{THREAD_ID}_r{round_number}_user", "hello", round_number)
        )

        users = [m for m in store.state.messages if m.is_user]
        assert len(users) == 1
        assert not users[0].is_optimistic
        assert get_user_message_for_round(store.state.messages, 0).text == "hello"

    def test_clears_resumption_attempts(self, store):
        store.mark_resumption_attempted(0, 0)

        store.prepare_for_new_message("hello")

        assert store.mark_resumption_attempted(0, 0)


class TestRoundLifecycle:
    """Test participant sequencing through the store."""

    def test_three_participants_in_order(self, store):
        round_number = store.prepare_for_new_message("question")
        store.start_streaming(round_number)
        assert store.state.has_sent_pending_message

        answer(store, round_number, 0)
        assert store.advance_participant(round_number, 0) == 1
        assert store.state.current_participant_index == 1
        assert not store.is_round_complete(round_number)

        answer(store, round_number, 1)
        assert store.advance_participant(round_number, 1) == 2
        assert not store.is_round_complete(round_number)

        answer(store, round_number, 2)
        assert store.advance_participant(round_number, 2) is None

        assert store.state.current_participant_index == 2
        assert not store.state.is_streaming
        assert store.is_round_complete(round_number)
        assert store.flow_state() == FlowState.CREATING_MODERATOR

    def test_failed_participant_does_not_block_round(self, thread, participants):
        store = ChatStore()
        store.set_screen_mode(ScreenMode.THREAD)
        store.initialize_thread(thread, participants[:2], [])
        round_number = store.prepare_for_new_message("question")
        store.start_streaming(round_number)

        answer(store, round_number, 0)
        store.advance_participant(round_number, 0)
        failed_id = store.ensure_participant_placeholder(round_number, 1)
        store.fail_message(failed_id, "Rate limit exceeded", ErrorCategory.RATE_LIMIT)

        assert store.advance_participant(round_number, 1) is None
        assert store.is_round_complete(round_number)
        failed = [m for m in store.state.messages if m.id == failed_id][0]
        assert failed.has_error
        assert failed.metadata.error_category == ErrorCategory.RATE_LIMIT

    def test_advance_requires_terminal_message(self, store):
        store.start_streaming(0)
        store.ensure_participant_placeholder(0, 0)

        with pytest.raises(OrchestrationError):
            store.advance_participant(0, 0)

    def test_advance_after_stop_returns_none(self, store):
        store.start_streaming(0)
        answer(store, 0, 0)
        store.stop_streaming()

        assert store.advance_participant(0, 0) is None

    def test_empty_response_is_silent_failure(self, store):
        store.start_streaming(0)
        message_id = store.ensure_participant_placeholder(0, 0)

        store.finish_message(message_id, "stop")

        message = store.state.messages[-1]
        assert message.has_error
        assert message.metadata.error_category == ErrorCategory.SILENT_FAILURE

    def test_placeholder_carries_participant(self, store, participants):
        store.start_streaming(0)
        message_id = store.ensure_participant_placeholder(0, 1)

        message = store.state.messages[-1]
        assert message_id == participant_message_id(THREAD_ID, 0, 1)
        assert message.metadata.model_id == participants[1].model_id

    def test_placeholder_needs_thread(self):
        with pytest.raises(StateError):
            ChatStore().ensure_participant_placeholder(0, 0)

    def test_chunk_dropped_when_not_streaming(self, store):
        message_id = store.ensure_participant_placeholder(0, 0)

        assert store.append_stream_chunk(message_id, "late") is False
        assert store.state.messages[-1].text == ""

    def test_complete_streaming_clears_flags(self, store):
        store.prepare_for_new_message("q")
        store.start_streaming(0)
        answer(store, 0, 0)

        store.complete_streaming()

        state = store.state
        assert not state.is_streaming
        assert state.streaming_round_number is None
        assert state.pending_message is None
        assert not state.messages[-1].has_streaming_parts

    def test_validates_round_invariants(self):
        broken = ChatState(
            thread=Thread(id=THREAD_ID),
            messages=(create_user_message("u1", "q", 0), create_user_message("u2", "q", 0)),
        )
        store = ChatStore(initial_state=broken)

        with pytest.raises(ValidationError):
            store.upsert_streaming_message(create_participant_message(THREAD_ID, 0, 0, text="a"))
        assert store.state is broken

    def test_invariant_checks_can_be_disabled(self):
        broken = ChatState(
            thread=Thread(id=THREAD_ID),
            messages=(create_user_message("u1", "q", 0), create_user_message("u2", "q", 0)),
        )
        store = ChatStore(FlowConfig(validate_invariants=False), initial_state=broken)

        store.upsert_streaming_message(create_participant_message(THREAD_ID, 0, 0, text="a"))

        assert len(store.state.messages) == 3


class TestStopStreaming:
    def test_stop_is_idempotent(self, store):
        store.prepare_for_new_message("q")
        store.start_streaming(0)
        answer(store, 0, 0)
        store.advance_participant(0, 0)
        store.ensure_participant_placeholder(0, 1)

        store.stop_streaming()
        after_first = store.state
        store.stop_streaming()

        assert store.state is after_first
        assert not store.state.is_streaming
        assert store.state.current_participant_index == 0

    def test_stop_keeps_only_completed_participants(self, store):
        store.prepare_for_new_message("q")
        store.start_streaming(0)
        answer(store, 0, 0)
        store.advance_participant(0, 0)
        in_flight = store.ensure_participant_placeholder(0, 1)
        store.append_stream_chunk(in_flight, "half")

        store.stop_streaming()

        ids = [m.id for m in store.state.messages]
        assert participant_message_id(THREAD_ID, 0, 0) in ids
        assert in_flight not in ids
        assert any(m.is_user for m in store.state.messages)

    def test_stop_on_fresh_store_is_noop(self):
        store = ChatStore()
        before = store.state

        store.stop_streaming()

        assert store.state is before


class TestRegeneration:
    def test_start_regeneration_keeps_user_message(self, store, completed_round):
        store.set_messages(completed_round(0))
        store.try_mark_moderator_created(0)

        store.start_regeneration(0)

        state = store.state
        assert [m.is_user for m in state.messages] == [True]
        assert state.is_regenerating
        assert state.regenerating_round_number == 0
        assert not store.has_moderator_been_created(0)

    def test_start_regeneration_drops_round_analysis(self, store, completed_round):
        store.set_messages(completed_round(0))
        store.create_pending_analysis(0)

        store.start_regeneration(0)

        assert store.get_analysis(0) is None

    def test_start_regeneration_drops_round_pre_search(self, store, completed_round):
        store.set_messages(completed_round(0) + completed_round(1))
        for round_number in (0, 1):
            store.add_pre_search(
                PreSearch(
                    id=f"{THREAD_ID}_r{round_number}_presearch",
                    thread_id=THREAD_ID,
                    round_number=round_number,
                    user_query="q",
                    status=MessageStatus.STREAMING,
                )
            )
            store.update_pre_search_data(round_number, PreSearchResult(summary="s"))
        store.try_mark_pre_search_triggered(0)

        store.start_regeneration(0)

        assert [p.round_number for p in store.state.pre_searches] == [1]
        assert not store.has_pre_search_been_triggered(0)

    def test_start_regeneration_expects_enabled_participants(self, store, completed_round):
        store.set_messages(completed_round(0))

        store.start_regeneration(0)

        assert store.state.expected_participant_ids == ("model-0", "model-1", "model-2")
        assert store.state.pending_message is None

    def test_complete_regeneration(self, store):
        store.start_regeneration(0)
        store.complete_regeneration(0)

        assert not store.state.is_regenerating
        assert store.state.regenerating_round_number is None


class TestResets:
    def test_reset_to_new_chat_with_preferences(self, store):
        store.reset_to_new_chat(
            {
                "selected_mode": "brainstorming",
                "selected_model_ids": ["a", "b"],
                "enable_web_search": True,
            }
        )

        state = store.state
        assert state.thread is None
        assert state.messages == ()
        assert state.screen_mode == ScreenMode.OVERVIEW
        assert state.selected_mode == ChatMode.BRAINSTORMING
        assert [p.model_id for p in state.selected_participants] == ["a", "b"]
        assert state.enable_web_search

    def test_reset_to_new_chat_ignores_unknown_mode(self, store):
        store.reset_to_new_chat({"selected_mode": "shouting"})
        assert store.state.selected_mode == ChatMode.ANALYZING

    def test_reset_to_new_chat_clears_tracking(self, store):
        store.try_mark_pre_search_triggered(0)
        store.try_mark_moderator_created(0)

        store.reset_to_new_chat()

        assert not store.has_pre_search_been_triggered(0)
        assert not store.has_moderator_been_created(0)
        assert store.state.selected_participants == ()
        assert not store.state.enable_web_search

    def test_reset_to_overview(self, store):
        store.set_input_value("draft")

        store.reset_to_overview()

        assert store.state == ChatState()

    def test_thread_navigation_keeps_form(self, store):
        store.set_input_value("draft")
        store.try_mark_pre_search_triggered(0)

        store.reset_for_thread_navigation()

        assert store.state.input_value == "draft"
        assert store.state.screen_mode == ScreenMode.THREAD
        assert store.state.thread is None
        assert not store.has_pre_search_been_triggered(0)


class TestPreSearchRecords:
    """Test the per-round pre-search lifecycle."""

    def record(self, status=MessageStatus.PENDING, **kwargs) -> PreSearch:
        return PreSearch(
            id=f"{THREAD_ID}_r0_presearch",
            thread_id=THREAD_ID,
            round_number=0,
            user_query="q",
            status=status,
            **kwargs,
        )

    def test_streaming_replaces_pending(self, store):
        store.add_pre_search(self.record())
        store.add_pre_search(self.record(MessageStatus.STREAMING))

        assert len(store.state.pre_searches) == 1
        assert store.state.pre_searches[0].status == MessageStatus.STREAMING

    def test_duplicate_ignored(self, store):
        store.add_pre_search(self.record(MessageStatus.STREAMING))
        store.add_pre_search(self.record())

        assert store.state.pre_searches[0].status == MessageStatus.STREAMING

    def test_update_data_completes(self, store):
        store.add_pre_search(self.record(MessageStatus.STREAMING))

        store.update_pre_search_data(0, PreSearchResult(summary="found"))

        record = store.state.pre_searches[0]
        assert record.status == MessageStatus.COMPLETE
        assert record.search_data.summary == "found"
        assert record.completed_at is not None

    def test_status_cannot_go_backwards(self, store):
        store.add_pre_search(self.record(MessageStatus.STREAMING))

        with pytest.raises(ValidationError):
            store.update_pre_search_status(0, MessageStatus.PENDING)

    def test_mark_failed_ignores_terminal(self, store):
        store.add_pre_search(self.record(MessageStatus.COMPLETE))

        store.mark_pre_search_failed(0, "late failure")

        assert store.state.pre_searches[0].status == MessageStatus.COMPLETE

    def test_stuck_pre_search_fails(self, store):
        store.add_pre_search(self.record())

        assert store.check_stuck_pre_searches(utc_now() + timedelta(seconds=5)) == []
        stuck = store.check_stuck_pre_searches(utc_now() + timedelta(seconds=11))

        assert stuck == [0]
        assert store.state.pre_searches[0].status == MessageStatus.FAILED
        assert store.state.pre_searches[0].error_message == "Pre-search timed out"

    def test_remove_and_clear(self, store):
        store.add_pre_search(self.record())
        store.try_mark_pre_search_triggered(0)

        store.remove_pre_search(0)
        assert store.state.pre_searches == ()

        store.add_pre_search(self.record())
        store.clear_all_pre_searches()
        assert store.state.pre_searches == ()
        assert not store.has_pre_search_been_triggered(0)


class TestAnalysisRecords:
    def test_create_pending_analysis(self, store, completed_round):
        store.set_messages(completed_round(0))

        analysis = store.create_pending_analysis(0)

        assert analysis.id == f"{THREAD_ID}_r0_moderator"
        assert analysis.status == MessageStatus.PENDING
        assert analysis.user_question == "question 0"
        assert analysis.participant_message_ids == tuple(
            participant_message_id(THREAD_ID, 0, i) for i in range(3)
        )
        assert store.create_pending_analysis(0) is analysis

    def test_status_then_data(self, store, completed_round):
        store.set_messages(completed_round(0))
        store.create_pending_analysis(0)

        store.update_analysis_status(0, MessageStatus.STREAMING)
        store.update_analysis_data(0, {"summary": "s"})

        analysis = store.get_analysis(0)
        assert analysis.status == MessageStatus.COMPLETE
        assert analysis.analysis_data == {"summary": "s"}

    def test_error_marks_failed(self, store, completed_round):
        store.set_messages(completed_round(0))
        store.create_pending_analysis(0)

        store.update_analysis_error(0, "moderator down")

        assert store.get_analysis(0).status == MessageStatus.FAILED
        assert store.get_analysis(0).error_message == "moderator down"

    def test_add_analysis_rejects_other_round_messages(self, store, completed_round):
        store.set_messages(completed_round(0))
        analysis = Analysis(
            id="a",
            thread_id=THREAD_ID,
            round_number=1,
            participant_message_ids=(participant_message_id(THREAD_ID, 0, 0),),
        )

        with pytest.raises(ValidationError):
            store.add_analysis(analysis)

    def test_remove_analysis_clears_moderator_tracking(self, store, completed_round):
        store.set_messages(completed_round(0))
        analysis = store.create_pending_analysis(0)
        store.try_mark_moderator_created(0)
        store.try_mark_moderator_stream_triggered(analysis.id, 0)

        store.remove_analysis(0)

        assert store.get_analysis(0) is None
        assert store.try_mark_moderator_created(0)
        assert store.try_mark_moderator_stream_triggered(analysis.id, 0)

    def test_stuck_analysis_fails(self, store, completed_round):
        store.set_messages(completed_round(0))
        store.create_pending_analysis(0)

        stuck = store.check_stuck_analyses(utc_now() + timedelta(minutes=2))

        assert stuck == [0]
        assert store.get_analysis(0).status == MessageStatus.FAILED

    def test_clear_all_analyses(self, store, completed_round):
        store.set_messages(completed_round(0))
        store.create_pending_analysis(0)

        store.clear_all_analyses()

        assert store.state.analyses == ()


class TestGuards:
    def test_try_mark_is_true_once(self, store):
        assert store.try_mark_pre_search_triggered(0)
        assert not store.try_mark_pre_search_triggered(0)
        assert store.try_mark_moderator_created(0)
        assert not store.try_mark_moderator_created(0)

    def test_clear_tracking_allows_retry(self, store):
        store.try_mark_pre_search_triggered(0)
        store.try_mark_moderator_created(0)

        store.clear_pre_search_tracking(0)
        store.clear_moderator_tracking(0)

        assert store.try_mark_pre_search_triggered(0)
        assert store.try_mark_moderator_created(0)

    def test_moderator_stream_guard(self, store):
        moderator_id = f"{THREAD_ID}_r0_moderator"

        assert store.try_mark_moderator_stream_triggered(moderator_id, 0)
        assert store.has_moderator_stream_been_triggered(moderator_id, 0)

        store.clear_moderator_stream_tracking(0)

        assert not store.has_moderator_stream_been_triggered(moderator_id, 0)


class TestStreamResumption:
    """Test resumption record handling."""

    def record(self, **kwargs) -> StreamResumptionState:
        defaults = {
            "stream_id": participant_message_id(THREAD_ID, 0, 1),
            "thread_id": THREAD_ID,
            "round_number": 0,
            "participant_index": 1,
        }
        defaults.update(kwargs)
        return StreamResumptionState(**defaults)

    def test_needs_resumption_for_current_thread(self, store):
        store.set_stream_resumption_state(self.record())

        assert store.needs_stream_resumption()
        assert store.is_stream_resumption_valid()
        assert not store.needs_message_sync()

    def test_other_thread_record_not_resumed(self, store):
        store.set_stream_resumption_state(self.record(thread_id="other"))

        assert not store.needs_stream_resumption()
        assert not store.is_stream_resumption_valid()

    def test_out_of_range_index_invalid(self, store):
        store.set_stream_resumption_state(self.record(participant_index=5))

        assert not store.is_stream_resumption_valid()
        assert not store.needs_stream_resumption()

    def test_stale_record(self, store):
        store.set_stream_resumption_state(
            self.record(created_at=utc_now() - timedelta(hours=2))
        )

        assert store.is_stream_resumption_stale()
        assert not store.needs_stream_resumption()

    def test_completed_record_needs_sync(self, store):
        store.set_stream_resumption_state(self.record(state=StreamStatus.COMPLETED))

        assert store.needs_message_sync()
        assert not store.needs_stream_resumption()

    def test_mark_attempted_once(self, store):
        assert store.mark_resumption_attempted(0, 1)
        assert not store.mark_resumption_attempted(0, 1)
        assert store.mark_resumption_attempted(0, 2)

    def test_resumed_complete_hands_off_next_participant(self, store):
        store.set_stream_resumption_state(self.record())

        next_index = store.handle_resumed_stream_complete(0, 1)

        state = store.state
        assert next_index == 2
        assert state.waiting_to_start_streaming
        assert state.next_participant_to_trigger == 2
        assert state.current_participant_index == 2
        assert state.stream_resumption is None

    def test_resumed_complete_on_last_participant(self, store):
        store.set_stream_resumption_state(self.record(participant_index=2))

        assert store.handle_resumed_stream_complete(0, 2) is None
        assert not store.state.is_streaming
        assert not store.state.waiting_to_start_streaming

    def test_failure_keeps_attempts(self, store):
        store.set_stream_resumption_state(self.record())
        store.mark_resumption_attempted(0, 1)

        store.handle_stream_resumption_failure(RuntimeError("gone"))

        assert store.state.stream_resumption is None
        assert not store.mark_resumption_attempted(0, 1)

    def test_failure_after_resume_started_clears_streaming(self, store):
        store.set_stream_resumption_state(self.record())
        store.start_streaming(0, 1)
        store.ensure_participant_placeholder(0, 1)
        seen = []
        store.subscribe(lambda state, prev, action: seen.append(action))

        store.handle_stream_resumption_failure(ConnectionError("stream lost"))

        state = store.state
        assert seen == ["stream_resumption/handle_stream_resumption_failure"]
        assert not state.is_streaming
        assert state.streaming_round_number is None
        assert state.current_participant_index == 0
        assert state.messages == ()

    def test_failure_keeps_finished_messages(self, store):
        store.set_stream_resumption_state(self.record())
        store.start_streaming(0, 0)
        answer(store, 0, 0)
        store.ensure_participant_placeholder(0, 1)

        store.handle_stream_resumption_failure()

        assert [m.id for m in store.state.messages] == [participant_message_id(THREAD_ID, 0, 0)]

    def test_clear_resets_attempts(self, store):
        store.set_stream_resumption_state(self.record())
        store.mark_resumption_attempted(0, 1)

        store.clear_stream_resumption()

        assert store.state.stream_resumption is None
        assert store.mark_resumption_attempted(0, 1)


class TestAnimationsAndNavigation:
    def test_pending_animation_blocks_moderator(self, store, completed_round):
        store.set_messages(completed_round(0))
        store.add_pending_animation(2)

        assert store.flow_state() != FlowState.CREATING_MODERATOR

        store.complete_animation(2)
        assert store.flow_state() == FlowState.CREATING_MODERATOR

    def test_has_navigated_completes_flow(self, store):
        store.set_has_navigated()

        assert store.state.has_navigated
        assert store.flow_state() == FlowState.COMPLETE

    def test_created_thread_id(self):
        store = ChatStore()
        store.set_is_creating_thread(True)
        store.set_created_thread_id("new")

        assert store.state.thread_id == "new"
        assert store.flow_state() == FlowState.CREATING_THREAD
