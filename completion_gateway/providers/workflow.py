"""Adapter for the asynchronous workflow (agent) execution system.

A completion is served by submitting a ``chat_workflow`` job and waiting for
its result to appear on the shared event stream under the conversation id
generated for this call.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from time import time
from uuid import uuid4

import httpx

from completion_gateway.models.openai import (
    ChoiceMessage,
    CompletionChoice,
    CompletionRequest,
    CompletionResponse,
    StreamChunk,
    Usage,
)
from completion_gateway.providers.base import ProviderError
from completion_gateway.providers.catalog import ProviderDescriptor, workflow_models
from completion_gateway.providers.streaming import estimate_tokens, terminal_chunk, word_chunks
from completion_gateway.providers.workflow_events import WorkflowEventHub

logger = logging.getLogger("cgw.providers.workflow")


def agent_name_from_model(model: str | None, prefix: str, default_agent: str) -> str:
    if model and prefix and model.startswith(prefix):
        return model.removeprefix(prefix).strip() or default_agent
    return default_agent


class WorkflowProvider:
    def __init__(
        self,
        base_url: str,
        events: WorkflowEventHub,
        workflow_name: str = "chat_workflow",
        model_prefix: str = "wf/",
        default_agent: str = "SimpleAgent",
        timeout_s: float = 30.0,
        response_timeout_s: float | None = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._events = events
        self._workflow_name = workflow_name
        self._model_prefix = model_prefix
        self._default_agent = default_agent
        self._timeout = timeout_s
        self._response_timeout_s = (
            response_timeout_s if response_timeout_s and response_timeout_s > 0 else None
        )
        self._transport = transport

    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        model = self._model(request)
        prompt, content = await self._execute(request)
        prompt_tokens = estimate_tokens(prompt)
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
        model = self._model(request)
        chunk_id = f"chatcmpl-{uuid4().hex}"
        created = int(time())
        _, content = await self._execute(request)
        for chunk in word_chunks(chunk_id, created, model, content):
            yield chunk
        yield terminal_chunk(chunk_id, created, model)

    def supported_models(self) -> list[ProviderDescriptor]:
        return workflow_models(self._model_prefix, self._default_agent)

    def agent_name(self, model: str | None) -> str:
        return agent_name_from_model(model, self._model_prefix, self._default_agent)

    async def close(self) -> None:
        await self._events.close()

    def _model(self, request: CompletionRequest) -> str:
        return request.model or f"{self._model_prefix}{self._default_agent}"

    async def _execute(self, request: CompletionRequest) -> tuple[str, str]:
        """Submit the job and wait for its result; returns (prompt, reply)."""
        last_user_message = request.last_user_message()
        if last_user_message is None:
            raise ProviderError(
                status_code=400,
                code="user_message_required",
                message="No user message found in request",
                error_type="validation",
            )

        correlation_id = f"conv-{uuid4().hex}"
        agent_name = self.agent_name(request.model)
        log_extra = {
            "provider": "workflow",
            "agent_name": agent_name,
            "correlation_id": correlation_id,
        }

        # Listen before submitting so a fast job cannot publish its result unseen.
        waiter = await self._events.subscribe(correlation_id)
        try:
            event_id = await self._submit(correlation_id, agent_name, last_user_message.content)
            logger.info("workflow_submitted", extra={**log_extra, "event_id": event_id})
            content = await asyncio.wait_for(waiter, timeout=self._response_timeout_s)
        except TimeoutError as exc:
            logger.warning("workflow_response_timeout", extra=log_extra)
            raise ProviderError(
                status_code=504,
                code="workflow_timeout",
                message=(
                    f"No workflow response for {correlation_id} within "
                    f"{self._response_timeout_s}s"
                ),
            ) from exc
        finally:
            self._events.unsubscribe(correlation_id)

        return last_user_message.content, content

    async def _submit(self, correlation_id: str, agent_name: str, message: str) -> str:
        url = f"{self._base_url}/admin/workflows/execute/{self._workflow_name}"
        body = {
            "name": self._workflow_name,
            "input": {
                "conversation_id": correlation_id,
                "agent_name": agent_name,
                "message": message,
            },
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(url, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=503,
                code="provider_timeout",
                message=f"Workflow submission timed out: {exc}",
            ) from exc
        except httpx.ConnectError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_connection_error",
                message=f"Cannot connect to workflow system: {exc}",
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_transport_error",
                message=f"Workflow submission transport failed: {exc}",
            ) from exc

        if resp.status_code >= 400:
            raise ProviderError(
                status_code=resp.status_code,
                code="workflow_submit_failed",
                message=f"Workflow API returned {resp.status_code}",
                detail=resp.text[:2000] or None,
            )

        try:
            result = resp.json()
        except ValueError:
            result = None
        event_id = result.get("event_id") if isinstance(result, dict) else None
        if not event_id:
            raise ProviderError(
                status_code=502,
                code="workflow_missing_event_id",
                message="No event ID returned from workflow",
            )
        return str(event_id)
