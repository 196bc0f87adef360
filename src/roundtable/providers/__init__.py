"""LLM provider integrations for Roundtable.

Streamers that adapt LangChain chat models to the execution contracts.
"""

from .langchain_streamer import (
    LangChainModeratorStreamer,
    LangChainParticipantStreamer,
    normalize_finish_reason,
)

__all__ = [
    "LangChainModeratorStreamer",
    "LangChainParticipantStreamer",
    "normalize_finish_reason",
]
