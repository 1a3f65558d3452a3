import asyncio
from collections.abc import AsyncIterator
from time import time
from uuid import uuid4

from completion_gateway.models.openai import (
    ChoiceMessage,
    CompletionChoice,
    CompletionRequest,
    CompletionResponse,
    StreamChunk,
    Usage,
)
from completion_gateway.providers.base import ProviderError
from completion_gateway.providers.catalog import DEFAULT_MODELS, FALLBACK_MODEL, ProviderDescriptor
from completion_gateway.providers.streaming import estimate_tokens, terminal_chunk, word_chunks

RESPONSE_TEMPLATE = (
    'I understand you\'re asking about "{prompt}". Let me help you with that.\n\n'
    "This is a comprehensive topic that involves several key considerations."
)


class MockProvider:
    """Offline provider that synthesizes replies from the last user message."""

    def __init__(self, response_delay_s: float = 0.5, chunk_delay_s: float = 0.05):
        self._response_delay_s = response_delay_s
        self._chunk_delay_s = chunk_delay_s

    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or FALLBACK_MODEL
        self._maybe_raise_provider_error(model)
        if self._response_delay_s > 0:
            await asyncio.sleep(self._response_delay_s)

        content = self.render(request)
        prompt_tokens = estimate_tokens(" ".join(m.content for m in request.messages))
        completion_tokens = estimate_tokens(content)
        return CompletionResponse(
            id=f"chatcmpl-{uuid4().hex}",
            created=int(time()),
            model=model,
            choices=[
                CompletionChoice(
                    index=0,
                    message=ChoiceMessage(content=content),
                    finish_reason="stop",
                )
            ],
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    async def chat_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or FALLBACK_MODEL
        self._maybe_raise_provider_error(model)
        chunk_id = f"chatcmpl-{uuid4().hex}"
        created = int(time())

        for chunk in word_chunks(chunk_id, created, model, self.render(request)):
            if self._chunk_delay_s > 0:
                await asyncio.sleep(self._chunk_delay_s)
            yield chunk

        yield terminal_chunk(chunk_id, created, model)

    def supported_models(self) -> list[ProviderDescriptor]:
        return list(DEFAULT_MODELS)

    @staticmethod
    def render(request: CompletionRequest) -> str:
        last_user_message = request.last_user_message()
        prompt = last_user_message.content if last_user_message else ""
        return RESPONSE_TEMPLATE.format(prompt=prompt)

    @staticmethod
    def _maybe_raise_provider_error(model: str) -> None:
        """Simulate upstream failures for model ids such as ``error-500``."""
        if not model.startswith("error-"):
            return
        status_raw = model.removeprefix("error-").split("-", 1)[0]
        if not status_raw.isdigit():
            return
        status_code = int(status_raw)
        if status_code == 429:
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        raise ProviderError(
            status_code=status_code,
            code="provider_error",
            message=f"Provider returned {status_code}",
            detail="simulated upstream failure",
        )
