"""Default values and reset groups for the Roundtable store.

Related fields are reset together through these groups so that a reset can
never forget one member of a group. Apply a group with
``dataclasses.replace(state, **GROUP)``; groups holding mutable-looking
values use immutable ones (tuples, frozensets) so they are safe to share.
"""

from roundtable.flow.guards import RoundTracking
from roundtable.state.schema import DEFAULT_CHAT_MODE, ScreenMode

FORM_DEFAULTS = {
    "input_value": "",
    "selected_mode": DEFAULT_CHAT_MODE,
    "selected_participants": (),
    "enable_web_search": False,
}

# Cleared whenever participant or moderator streaming ends
STREAMING_STATE_RESET = {
    "is_streaming": False,
    "streaming_round_number": None,
    "waiting_to_start_streaming": False,
    "current_participant_index": 0,
}

MODERATOR_STATE_RESET = {
    "is_moderator_streaming": False,
    "is_creating_moderator": False,
}

PENDING_MESSAGE_STATE_RESET = {
    "pending_message": None,
    "expected_participant_ids": (),
    "has_sent_pending_message": False,
}

REGENERATION_STATE_RESET = {
    "is_regenerating": False,
    "regenerating_round_number": None,
}

STREAM_RESUMPTION_STATE_RESET = {
    "stream_resumption": None,
    "next_participant_to_trigger": None,
}

ANIMATION_STATE_RESET = {
    "pending_animations": frozenset(),
}

# Per-thread state; thread data itself (thread, participants, messages,
# records) is added by THREAD_NAVIGATION_RESET_STATE
THREAD_RESET_STATE = {
    **STREAMING_STATE_RESET,
    **MODERATOR_STATE_RESET,
    **PENDING_MESSAGE_STATE_RESET,
    **REGENERATION_STATE_RESET,
    **STREAM_RESUMPTION_STATE_RESET,
    **ANIMATION_STATE_RESET,
    "is_waiting_for_changelog": False,
    "has_initially_loaded": False,
    "error": None,
    "tracking": RoundTracking(),
}

THREAD_NAVIGATION_RESET_STATE = {
    **THREAD_RESET_STATE,
    "thread": None,
    "participants": (),
    "messages": (),
    "pre_searches": (),
    "analyses": (),
    "created_thread_id": None,
    "is_creating_thread": False,
    "has_navigated": False,
}

COMPLETE_RESET_STATE = {
    **THREAD_NAVIGATION_RESET_STATE,
    **FORM_DEFAULTS,
    "screen_mode": ScreenMode.OVERVIEW,
}
