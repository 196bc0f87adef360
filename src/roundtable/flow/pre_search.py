"""Pre-search gate for Roundtable.

Decides whether participant streaming may begin for a round, based on
web-search enablement and the status of that round's pre-search record.
A failed pre-search never blocks: the round proceeds without search
context. A record stuck in pending/streaming past the staleness threshold
is treated the same as a failed one.
"""

from datetime import datetime, timedelta
from typing import Optional, Sequence

from roundtable.state.schema import PreSearch, Thread, utc_now
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)

PRE_SEARCH_TIMEOUT = timedelta(seconds=10)


def get_pre_search_for_round(
    pre_searches: Sequence[PreSearch], round_number: int
) -> Optional[PreSearch]:
    for record in pre_searches:
        if record.round_number == round_number:
            return record
    return None


def should_wait_for_pre_search(
    web_search_enabled: bool,
    pre_searches: Sequence[PreSearch],
    round_number: int,
) -> bool:
    """Return True while participants must wait for the round's pre-search.

    Args:
        web_search_enabled: Whether web search is on for this round
        pre_searches: Pre-search records of the thread
        round_number: Round being gated

    Returns:
        True when search is enabled and the round has no record yet or its
        record is still pending/streaming.
    """
    if not web_search_enabled:
        return False

    record = get_pre_search_for_round(pre_searches, round_number)
    if record is None:
        return True

    return record.status.is_in_progress


def is_pre_search_timed_out(
    record: PreSearch,
    now: Optional[datetime] = None,
    timeout: timedelta = PRE_SEARCH_TIMEOUT,
) -> bool:
    """Whether an in-progress record has exceeded the staleness threshold."""
    if not record.status.is_in_progress:
        return False
    now = now or utc_now()
    return now - record.created_at > timeout


def should_wait_for_pre_search_with_timeout(
    web_search_enabled: bool,
    pre_searches: Sequence[PreSearch],
    round_number: int,
    now: Optional[datetime] = None,
    timeout: timedelta = PRE_SEARCH_TIMEOUT,
) -> bool:
    """Like ``should_wait_for_pre_search`` but a stale record stops blocking."""
    if not should_wait_for_pre_search(web_search_enabled, pre_searches, round_number):
        return False

    record = get_pre_search_for_round(pre_searches, round_number)
    if record is not None and is_pre_search_timed_out(record, now, timeout):
        logger.warning(
            f"Pre-search for round {round_number} stuck in {record.status.value}, "
            f"proceeding without search context"
        )
        return False
    return True


def get_effective_web_search_enabled(
    thread: Optional[Thread], form_enable_web_search: Optional[bool] = None
) -> bool:
    """Web search setting that applies to the next round.

    A pending form toggle wins over the thread's persisted value so that
    enabling search mid-conversation gates the very next round.
    """
    if form_enable_web_search is not None:
        return form_enable_web_search
    return bool(thread and thread.enable_web_search)
