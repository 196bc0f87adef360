"""Pytest configuration and shared fixtures for Roundtable tests.

This module provides common test fixtures and configuration
that can be used across all test modules.
"""

from pathlib import Path
from typing import Callable, List

import pytest
from _pytest.config import Config

from roundtable.config.models import FlowConfig
from roundtable.state.schema import Participant, ScreenMode, Thread
from roundtable.state.store import ChatStore
from roundtable.state.utils import create_participant_message, create_user_message
from tests.helpers.factories import THREAD_ID, make_participants


@pytest.fixture
def thread() -> Thread:
    return Thread(id=THREAD_ID, slug="test-thread", title="Test thread")


@pytest.fixture
def participants() -> List[Participant]:
    return make_participants(3)


@pytest.fixture
def store(thread: Thread, participants: List[Participant]) -> ChatStore:
    """A store with a loaded thread on the thread screen."""
    chat_store = ChatStore(FlowConfig())
    chat_store.set_screen_mode(ScreenMode.THREAD)
    chat_store.initialize_thread(thread, participants, [])
    return chat_store


@pytest.fixture
def completed_round() -> Callable:
    """Build the messages of a fully answered round."""

    def build(round_number: int, count: int = 3, thread_id: str = THREAD_ID):
        messages = [
            create_user_message(
                f"{thread_id}_r{round_number}_user", f"question {round_number}", round_number
            )
        ]
        for i in range(count):
            messages.append(
                create_participant_message(
                    thread_id, round_number, i, text=f"answer {i}", finish_reason="stop"
                )
            )
        return messages

    return build


@pytest.fixture(autouse=True)
def isolate_tests(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate tests by changing to a temporary directory."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "ROUNDTABLE_LOG_LEVEL",
        "ROUNDTABLE_PRE_SEARCH_TIMEOUT",
        "ROUNDTABLE_ANALYSIS_TIMEOUT",
        "ROUNDTABLE_STREAM_RESUMPTION_TTL",
        "ROUNDTABLE_VALIDATE_INVARIANTS",
    ):
        monkeypatch.delenv(name, raising=False)


def pytest_configure(config: Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
