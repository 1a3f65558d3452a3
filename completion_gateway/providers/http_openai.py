"""HTTP provider for OpenAI-compatible endpoints."""

import json
from collections.abc import AsyncIterator
from contextlib import aclosing
from time import time
from uuid import uuid4

import httpx
from pydantic import ValidationError

from completion_gateway.models.openai import CompletionRequest, CompletionResponse, StreamChunk
from completion_gateway.providers.base import ProviderError
from completion_gateway.providers.catalog import (
    FALLBACK_MODEL,
    ProviderDescriptor,
    models_for_family,
)
from completion_gateway.providers.streaming import (
    SSE_DONE,
    chunks_from_openai,
    parse_sse_line,
    terminal_chunk,
)

MAX_ERROR_DETAIL_CHARS = 2000


class HTTPOpenAIProvider:
    """Provider that calls any OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s
        self._transport = transport

    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        body = self._build_body(request, stream=False)
        result = await self._post("/chat/completions", body)
        result.setdefault("model", body["model"])
        try:
            response = CompletionResponse.model_validate(result)
        except ValidationError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_invalid_response",
                message="Provider returned an unexpected completion payload",
                detail=str(exc)[:MAX_ERROR_DETAIL_CHARS],
            ) from exc
        return response.model_copy(update={"usage": response.usage.recomputed()})

    async def chat_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        body = self._build_body(request, stream=True)
        model = str(body["model"])
        fallback_id = f"chatcmpl-{uuid4().hex}"
        created = int(time())
        last_id = fallback_id

        async with aclosing(self._stream_post("/chat/completions", body)) as frames:
            async for data in frames:
                if data == SSE_DONE:
                    # Upstream finished cleanly without a finish_reason frame.
                    yield terminal_chunk(last_id, created, model)
                    return
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if not isinstance(parsed, dict):
                    continue
                for chunk in chunks_from_openai(parsed, last_id, created, model):
                    last_id = chunk.id
                    created = chunk.created
                    yield chunk
                    if chunk.is_terminal:
                        return

    def supported_models(self) -> list[ProviderDescriptor]:
        return models_for_family("openai")

    @staticmethod
    def _build_body(request: CompletionRequest, stream: bool) -> dict[str, object]:
        body: dict[str, object] = {
            "model": request.model or FALLBACK_MODEL,
            "messages": [m.model_dump(exclude_none=True) for m in request.messages],
            "stream": stream,
        }
        optional: dict[str, object | None] = {
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "stop": request.stop,
            "user": request.user,
        }
        body.update({key: value for key, value in optional.items() if value is not None})
        return body

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _stream_post(self, path: str, body: dict[str, object]) -> AsyncIterator[str]:
        """Yield the payload of every ``data:`` frame until the body ends."""
        url = f"{self._base_url}{path}"
        headers = {**self._headers(), "Accept": "text/event-stream"}

        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body, headers=headers) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                    self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        data = parse_sse_line(line)
                        if data is None:
                            continue
                        yield data
                        if data == SSE_DONE:
                            return
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=503,
                code="provider_timeout",
                message=f"Provider request timed out: {exc}",
            ) from exc
        except httpx.ConnectError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_connection_error",
                message=f"Cannot connect to provider: {exc}",
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_transport_error",
                message=f"Provider transport failed: {exc}",
            ) from exc

    async def _post(self, path: str, body: dict[str, object]) -> dict[str, object]:
        url = f"{self._base_url}{path}"

        try:
            async with self._client() as client:
                resp = await client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=503,
                code="provider_timeout",
                message=f"Provider request timed out: {exc}",
            ) from exc
        except httpx.ConnectError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_connection_error",
                message=f"Cannot connect to provider: {exc}",
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_transport_error",
                message=f"Provider transport failed: {exc}",
            ) from exc

        self._raise_for_status(resp)

        try:
            result = resp.json()
        except json.JSONDecodeError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_invalid_response",
                message="Provider returned a non-JSON body",
                detail=resp.text[:MAX_ERROR_DETAIL_CHARS],
            ) from exc
        if not isinstance(result, dict):
            raise ProviderError(
                status_code=502,
                code="provider_invalid_response",
                message="Provider returned a non-object body",
            )
        return result

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        detail = resp.text[:MAX_ERROR_DETAIL_CHARS] or None
        if resp.status_code == 429:
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
                detail=detail,
            )
        if resp.status_code in {502, 503}:
            raise ProviderError(
                status_code=resp.status_code,
                code="provider_upstream_error",
                message=f"Provider returned {resp.status_code}",
                detail=detail,
            )
        raise ProviderError(
            status_code=resp.status_code,
            code="provider_error",
            message=f"Provider returned {resp.status_code}",
            detail=detail,
        )
