"""Tests for the message model and state helpers."""

import pytest

from roundtable.state.schema import (
    ChatMode,
    ErrorCategory,
    Message,
    MessageRole,
    MessageStatus,
    ModeratorMetadata,
    TextPart,
    UserMetadata,
)
from roundtable.state.utils import (
    create_moderator_message,
    create_participant_message,
    create_user_message,
    get_participant_messages_for_round,
    get_user_message_for_round,
    is_deterministic_id,
    message_sort_key,
    moderator_message_id,
    participant_message_id,
    stream_id_for,
    user_message_id,
)


class TestIdentity:
    """Test canonical message and stream identity."""

    def test_message_ids(self):
        assert participant_message_id("t1", 2, 1) == "t1_r2_p1"
        assert moderator_message_id("t1", 2) == "t1_r2_moderator"
        assert user_message_id("t1", 2) == "t1_r2_user"

    def test_stream_id_matches_message_id(self):
        assert stream_id_for("t1", 0, 3) == participant_message_id("t1", 0, 3)
        assert stream_id_for("t1", 0, None) == moderator_message_id("t1", 0)
        assert stream_id_for("t1", 0, -1) == moderator_message_id("t1", 0)

    @pytest.mark.parametrize(
        "message_id,expected",
        [
            ("t1_r0_p0", True),
            ("thread_with_underscores_r12_p3", True),
            ("t1_r0_moderator", True),
            ("t1_r4_user", True),
            ("optimistic-user-r0-abcd1234", False),
            ("msg_8f2c", False),
        ],
    )
    def test_is_deterministic_id(self, message_id, expected):
        assert is_deterministic_id(message_id) is expected


class TestMessage:
    """Test message properties across metadata variants."""

    def test_role_must_match_metadata(self):
        with pytest.raises(ValueError):
            Message(
                id="x",
                role=MessageRole.ASSISTANT,
                parts=(),
                metadata=UserMetadata(round_number=0),
            )

    def test_user_message_is_terminal(self):
        message = create_user_message("u", "hi", 0)
        assert message.is_terminal
        assert message.participant_index is None
        assert message.text == "hi"

    def test_participant_terminal_on_finish_reason(self):
        streaming = create_participant_message("t", 0, 1, text="partial")
        done = create_participant_message("t", 0, 1, text="done", finish_reason="length")

        assert not streaming.is_terminal
        assert done.is_terminal
        assert done.participant_index == 1

    def test_participant_terminal_on_error_category(self):
        message = create_participant_message(
            "t", 0, 0, has_error=True, error_category=ErrorCategory.SILENT_FAILURE
        )
        assert message.is_terminal

    def test_moderator_metadata(self):
        message = create_moderator_message("t", 1, text="summary", finish_reason="stop")

        assert message.is_moderator
        assert message.participant_index == -1
        assert isinstance(message.metadata, ModeratorMetadata)
        assert not message.is_optimistic

    def test_parts_coerced_to_tuple(self):
        message = Message(
            id="u",
            role=MessageRole.USER,
            parts=[TextPart("a"), TextPart("b")],
            metadata=UserMetadata(round_number=0),
        )
        assert message.parts == (TextPart("a"), TextPart("b"))
        assert message.text == "ab"


class TestEnums:
    def test_status_helpers(self):
        assert MessageStatus.PENDING.is_in_progress
        assert MessageStatus.STREAMING.is_in_progress
        assert MessageStatus.COMPLETE.is_terminal
        assert MessageStatus.FAILED.is_terminal

    def test_chat_mode_case_insensitive(self):
        assert ChatMode("BRAINSTORMING") == ChatMode.BRAINSTORMING
        with pytest.raises(ValueError):
            ChatMode("chatting")


class TestQueries:
    """Test round query helpers."""

    def test_sort_key_orders_round_slots(self):
        messages = [
            create_moderator_message("t", 0),
            create_participant_message("t", 0, 1),
            create_user_message("u1", "q", 1),
            create_participant_message("t", 0, 0),
            create_user_message("u0", "q", 0),
        ]

        ordered = sorted(messages, key=message_sort_key)

        assert [m.id for m in ordered] == ["u0", "t_r0_p0", "t_r0_p1", "t_r0_moderator", "u1"]

    def test_user_message_prefers_authoritative(self):
        optimistic = create_user_message("opt", "q", 0, is_optimistic=True)
        real = create_user_message("t_r0_user", "q", 0)

        assert get_user_message_for_round([optimistic, real], 0) is real
        assert get_user_message_for_round([optimistic], 0) is optimistic
        assert get_user_message_for_round([optimistic], 1) is None

    def test_participant_messages_by_index(self, completed_round):
        by_index = get_participant_messages_for_round(completed_round(0, 3), 0)
        assert sorted(by_index) == [0, 1, 2]
