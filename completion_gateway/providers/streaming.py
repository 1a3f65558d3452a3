"""Normalization helpers shared by every streaming path.

Each provider stream is a finite, ordered sequence of ``StreamChunk`` values
that ends with exactly one terminal chunk: empty delta, non-null finish
reason. Nothing follows the terminal chunk.
"""

import json
import math
from collections.abc import AsyncIterator, Iterator
from contextlib import aclosing

from completion_gateway.models.openai import (
    ChunkDelta,
    FinishReason,
    StreamChunk,
    normalize_finish_reason,
)
from completion_gateway.providers.base import ProviderError

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_words(content: str) -> list[str]:
    """Split on single spaces, keeping the separators on the following word.

    Joining the result reproduces ``content`` exactly, newlines included.
    """
    words = content.split(" ")
    return [word if index == 0 else f" {word}" for index, word in enumerate(words)]


def content_chunk(chunk_id: str, created: int, model: str, content: str) -> StreamChunk:
    return StreamChunk(
        id=chunk_id,
        created=created,
        model=model,
        delta=ChunkDelta(content=content),
    )


def terminal_chunk(
    chunk_id: str, created: int, model: str, finish_reason: FinishReason = "stop"
) -> StreamChunk:
    return StreamChunk(
        id=chunk_id,
        created=created,
        model=model,
        delta=ChunkDelta(),
        finish_reason=finish_reason,
    )


def word_chunks(chunk_id: str, created: int, model: str, content: str) -> Iterator[StreamChunk]:
    for piece in split_words(content):
        yield content_chunk(chunk_id, created, model, piece)


def parse_sse_line(line: str) -> str | None:
    """Return the payload of a ``data:`` frame, or None for any other line."""
    if not line or not line.startswith(SSE_DATA_PREFIX):
        return None
    return line.removeprefix(SSE_DATA_PREFIX).strip()


def chunks_from_openai(
    payload: dict[str, object], fallback_id: str, fallback_created: int, fallback_model: str
) -> list[StreamChunk]:
    """Convert one upstream ``chat.completion.chunk`` into normalized chunks.

    Usage-only frames produce nothing. A frame that carries both content and a
    finish reason becomes a content chunk followed by the terminal chunk.
    """
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return []
    choice = choices[0]
    if not isinstance(choice, dict):
        return []

    chunk_id = str(payload.get("id") or fallback_id)
    created_raw = payload.get("created")
    created = int(created_raw) if isinstance(created_raw, int | float) else fallback_created
    model = str(payload.get("model") or fallback_model)

    result: list[StreamChunk] = []
    delta = choice.get("delta")
    if isinstance(delta, dict):
        content = delta.get("content")
        if isinstance(content, str) and content:
            result.append(content_chunk(chunk_id, created, model, content))

    finish_reason = normalize_finish_reason(choice.get("finish_reason"))
    if finish_reason is not None:
        result.append(terminal_chunk(chunk_id, created, model, finish_reason))
    return result


async def ensure_terminated(stream: AsyncIterator[StreamChunk]) -> AsyncIterator[StreamChunk]:
    """Forward ``stream`` and enforce the terminal-chunk contract.

    The source is closed on every exit path, including when the consumer
    stops iterating early.
    """
    async with aclosing(stream) as source:  # type: ignore[type-var]
        async for chunk in source:
            if chunk.is_terminal:
                if chunk.delta.content:
                    yield chunk.model_copy(update={"finish_reason": None})
                yield chunk.model_copy(update={"delta": ChunkDelta()})
                return
            yield chunk
    raise ProviderError(
        status_code=502,
        code="stream_incomplete",
        message="Provider stream ended without a terminal chunk",
    )


def sse_frame(payload: dict[str, object] | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=True)
    return f"data: {data}\n\n"
