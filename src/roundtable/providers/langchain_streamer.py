"""LangChain-backed streamers for Roundtable.

``LangChainParticipantStreamer`` and ``LangChainModeratorStreamer`` adapt any
``langchain_core`` chat model to the execution contracts: tokens from
``astream`` become ``TextDelta`` events, and the stream always ends with
exactly one ``StreamFinished`` or ``StreamFailed``. Provider exceptions never
escape; they are categorised and reported as ``StreamFailed``.
"""

from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, SystemMessage

from roundtable.execution.contracts import (
    StreamEvent,
    StreamFailed,
    StreamFinished,
    TextDelta,
)
from roundtable.state.schema import (
    DEFAULT_CHAT_MODE,
    ChatMode,
    ErrorCategory,
    FinishReason,
    Participant,
)
from roundtable.utils.errors import categorize_error
from roundtable.utils.logging import get_logger

logger = get_logger(__name__)

# Provider finish reasons normalised to FinishReason values
_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "STOP": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "MAX_TOKENS": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "tool_calls": FinishReason.TOOL_CALLS,
    "tool_use": FinishReason.TOOL_CALLS,
}

PARTICIPANT_SYSTEM_PROMPT = (
    "You are one of several AI models answering the same question in turn. "
    "Earlier answers from other models are labelled with their model name. "
    "Build on them, disagree where warranted and do not repeat them."
)

MODERATOR_PROMPTS = {
    ChatMode.ANALYZING: "Synthesize the participants' analyses into a balanced summary.",
    ChatMode.BRAINSTORMING: "Collect the strongest ideas the participants proposed.",
    ChatMode.DEBATING: "Summarize each position and where the participants disagree.",
    ChatMode.SOLVING: "Combine the participants' answers into one recommended solution.",
}


def normalize_finish_reason(raw: Optional[str]) -> str:
    if not raw:
        return FinishReason.STOP.value
    reason = _FINISH_REASONS.get(raw) or _FINISH_REASONS.get(str(raw).lower())
    return (reason or FinishReason.OTHER).value


def _chunk_finish_reason(chunk) -> Optional[str]:
    metadata = getattr(chunk, "response_metadata", None) or {}
    return metadata.get("finish_reason") or metadata.get("stop_reason")


def _chunk_text(chunk) -> str:
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    # Content blocks (list of str / dict parts)
    texts = []
    for block in content or ():
        if isinstance(block, str):
            texts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            texts.append(block.get("text", ""))
    return "".join(texts)


async def stream_model(
    model: BaseChatModel, messages: Sequence[BaseMessage], label: str
) -> AsyncIterator[StreamEvent]:
    """Stream ``model`` over ``messages`` as contract events."""
    finish_reason: Optional[str] = None
    total = 0
    try:
        async for chunk in model.astream(list(messages)):
            finish_reason = _chunk_finish_reason(chunk) or finish_reason
            text = _chunk_text(chunk)
            if text:
                total += len(text)
                yield TextDelta(text)
    except Exception as e:
        category = categorize_error(e)
        logger.warning(f"{label} failed ({category.value}): {e}")
        yield StreamFailed(category=category, message=str(e) or type(e).__name__)
        return

    logger.info(f"{label} streamed {total} chars")
    yield StreamFinished(normalize_finish_reason(finish_reason))


class LangChainParticipantStreamer:
    """``ParticipantStreamer`` over a mapping of model id to chat model."""

    def __init__(
        self,
        models: Mapping[str, BaseChatModel],
        system_prompt: Optional[str] = PARTICIPANT_SYSTEM_PROMPT,
    ):
        self.models: Dict[str, BaseChatModel] = dict(models)
        self.system_prompt = system_prompt

    def build_messages(
        self, participant: Participant, context: Sequence[BaseMessage]
    ) -> List[BaseMessage]:
        lines = [self.system_prompt] if self.system_prompt else []
        if participant.role:
            lines.append(f"Your role: {participant.role}")
        prompt = "\n\n".join(lines)
        head: List[BaseMessage] = [SystemMessage(content=prompt)] if prompt else []
        return head + list(context)

    async def stream(
        self,
        participant: Participant,
        context: Sequence[BaseMessage],
        round_number: int,
    ) -> AsyncIterator[StreamEvent]:
        label = f"Round {round_number} participant {participant.model_id}"
        model = self.models.get(participant.model_id)
        if model is None:
            logger.error(f"No chat model configured for {participant.model_id}")
            yield StreamFailed(
                category=ErrorCategory.MODEL_UNAVAILABLE,
                message=f"Model {participant.model_id} is not available",
            )
            return

        async for event in stream_model(
            model, self.build_messages(participant, context), label
        ):
            yield event


class LangChainModeratorStreamer:
    """``ModeratorStreamer`` that synthesises a round with one chat model."""

    def __init__(self, model: BaseChatModel, mode: ChatMode = DEFAULT_CHAT_MODE):
        self.model = model
        self.mode = ChatMode(mode)

    async def stream(
        self, context: Sequence[BaseMessage], round_number: int
    ) -> AsyncIterator[StreamEvent]:
        messages = [SystemMessage(content=MODERATOR_PROMPTS[self.mode]), *context]
        async for event in stream_model(
            self.model, messages, f"Round {round_number} moderator"
        ):
            yield event
