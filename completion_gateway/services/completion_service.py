import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from datetime import UTC, datetime
from time import perf_counter, time
from typing import Any
from uuid import uuid4

from completion_gateway.config.settings import Settings
from completion_gateway.core.credentials import CredentialSource, SettingsCredentialSource
from completion_gateway.core.errors import AppError, ThreadAccessError
from completion_gateway.core.identity import AuthenticatedCaller
from completion_gateway.metrics import record_completion, record_write_failure
from completion_gateway.models.openai import (
    ChoiceMessage,
    CompletionChoice,
    CompletionRecord,
    CompletionRequest,
    CompletionResponse,
    FinishReason,
    StreamChunk,
    Usage,
)
from completion_gateway.providers.base import ProviderError
from completion_gateway.providers.catalog import ProviderDescriptor
from completion_gateway.providers.selector import (
    ProviderSelection,
    ProviderSet,
    build_providers,
    resolve_model,
    select_provider,
)
from completion_gateway.providers.streaming import ensure_terminated, estimate_tokens
from completion_gateway.records.store import CompletionRecordSink
from completion_gateway.threads.store import ConversationStore, ThreadMessage

logger = logging.getLogger("cgw.completions")


@dataclass
class CompletionResult:
    response: CompletionResponse
    record: CompletionRecord


class CompletionService:
    def __init__(
        self,
        settings: Settings,
        record_sink: CompletionRecordSink,
        conversation_store: ConversationStore,
        credentials: CredentialSource | None = None,
        providers: ProviderSet | None = None,
    ):
        self._settings = settings
        self._record_sink = record_sink
        self._conversations = conversation_store
        self._credentials = credentials or SettingsCredentialSource(settings)
        self._providers = providers or build_providers(settings)

    def select(self, requested_model: str | None) -> ProviderSelection:
        model = resolve_model(requested_model, self._settings)
        selection = select_provider(model, self._settings, self._credentials, self._providers)
        logger.debug(
            "provider_selected",
            extra={
                "model": selection.model,
                "provider": selection.name,
                "agent_name": selection.agent_name,
            },
        )
        return selection

    async def create_completion(
        self, request: CompletionRequest, caller: AuthenticatedCaller
    ) -> CompletionResult:
        started = perf_counter()
        request_id = uuid4().hex
        created_at = datetime.now(UTC)
        selection = self.select(request.model)
        provider_request = request.model_copy(update={"model": selection.model, "stream": False})
        log_extra: dict[str, Any] = {
            "request_id": request_id,
            "user_id": caller.id,
            "model": selection.model,
            "provider": selection.name,
            "thread_ref": request.thread_ref,
            "streaming": False,
        }

        try:
            provider_response = await selection.provider.chat(provider_request)
            response = provider_response.model_copy(
                update={
                    "id": self._completion_id(request_id),
                    "usage": provider_response.usage.recomputed(),
                }
            )
            message_id: str | None = None
            if request.thread_ref:
                message_id = self._integrate_with_thread(
                    request.thread_ref, request, response, caller
                )
        except Exception as exc:
            latency_ms = int((perf_counter() - started) * 1000)
            logger.warning(
                "completion_failed",
                extra={**log_extra, "latency_ms": latency_ms, "error": self._error_code(exc)},
            )
            if self._settings.metrics_enabled:
                record_completion(
                    provider=selection.name,
                    model=selection.model,
                    status="error",
                    streaming=False,
                    latency_s=latency_ms / 1000.0,
                )
            await self._persist(
                self._build_record(
                    request=request,
                    caller=caller,
                    selection=selection,
                    request_id=request_id,
                    created_at=created_at,
                    stream=False,
                    response=None,
                    error=exc,
                ),
                log_extra,
            )
            raise

        record = await self._persist(
            self._build_record(
                request=request,
                caller=caller,
                selection=selection,
                request_id=request_id,
                created_at=created_at,
                stream=False,
                response=response,
                message_id=message_id,
            ),
            log_extra,
        )

        latency_ms = int((perf_counter() - started) * 1000)
        logger.info(
            "completion_created",
            extra={
                **log_extra,
                "record_id": record.id,
                "latency_ms": latency_ms,
                "token_in": response.usage.prompt_tokens,
                "token_out": response.usage.completion_tokens,
            },
        )
        if self._settings.metrics_enabled:
            record_completion(
                provider=selection.name,
                model=selection.model,
                status="ok",
                streaming=False,
                latency_s=latency_ms / 1000.0,
                tokens_in=response.usage.prompt_tokens,
                tokens_out=response.usage.completion_tokens,
            )
        return CompletionResult(response=response, record=record)

    async def create_streaming_completion(
        self, request: CompletionRequest, caller: AuthenticatedCaller
    ) -> AsyncIterator[StreamChunk]:
        started = perf_counter()
        request_id = uuid4().hex
        completion_id = self._completion_id(request_id)
        created_at = datetime.now(UTC)
        selection = self.select(request.model)
        provider_request = request.model_copy(update={"model": selection.model, "stream": True})
        log_extra: dict[str, Any] = {
            "request_id": request_id,
            "user_id": caller.id,
            "model": selection.model,
            "provider": selection.name,
            "streaming": True,
        }

        parts: list[str] = []
        finish_reason: FinishReason | None = None
        created = int(time())
        error: BaseException | None = None

        try:
            stream = ensure_terminated(selection.provider.chat_stream(provider_request))
            async with aclosing(stream) as chunks:  # type: ignore[type-var]
                async for chunk in chunks:
                    created = chunk.created
                    if chunk.is_terminal:
                        finish_reason = chunk.finish_reason
                    elif chunk.delta.content:
                        parts.append(chunk.delta.content)
                    yield chunk.model_copy(update={"id": completion_id})
        except Exception as exc:
            error = exc
            raise
        finally:
            await self._finish_stream(
                request=request,
                caller=caller,
                selection=selection,
                request_id=request_id,
                completion_id=completion_id,
                created_at=created_at,
                created=created,
                content="".join(parts),
                finish_reason=finish_reason,
                error=error,
                latency_ms=int((perf_counter() - started) * 1000),
                log_extra=log_extra,
            )

    def get_available_models(self) -> list[ProviderDescriptor]:
        return self.select(None).provider.supported_models()

    def get_completion(
        self, record_id: str, caller: AuthenticatedCaller
    ) -> CompletionRecord | None:
        record = self._record_sink.get(record_id)
        if record is None or record.user_id != caller.id:
            return None
        return record

    def _integrate_with_thread(
        self,
        thread_ref: str,
        request: CompletionRequest,
        response: CompletionResponse,
        caller: AuthenticatedCaller,
    ) -> str:
        """Append the exchange to the caller's thread; returns the assistant message id."""
        if not self._conversations.verify_ownership(thread_ref, caller.id):
            raise ThreadAccessError(thread_ref)

        latest = request.last_user_message()
        if latest is not None:
            self._conversations.append(
                thread_ref,
                ThreadMessage(
                    role="user",
                    content=latest.content,
                    author_id=caller.id,
                    metadata={"source": "completion", "completion_request": True},
                ),
            )

        return self._conversations.append(
            thread_ref,
            ThreadMessage(
                role="assistant",
                content=response.content,
                metadata={
                    "source": "completion",
                    "completion_id": response.id,
                    "model": response.model,
                    "usage": response.usage.model_dump(),
                    "finish_reason": response.finish_reason,
                },
            ),
        )

    async def _finish_stream(
        self,
        request: CompletionRequest,
        caller: AuthenticatedCaller,
        selection: ProviderSelection,
        request_id: str,
        completion_id: str,
        created_at: datetime,
        created: int,
        content: str,
        finish_reason: FinishReason | None,
        error: BaseException | None,
        latency_ms: int,
        log_extra: dict[str, Any],
    ) -> None:
        response: CompletionResponse | None = None
        if error is None and finish_reason is not None:
            prompt_tokens = estimate_tokens(" ".join(m.content for m in request.messages))
            completion_tokens = estimate_tokens(content)
            response = CompletionResponse(
                id=completion_id,
                created=created,
                model=selection.model,
                choices=[
                    CompletionChoice(
                        index=0,
                        message=ChoiceMessage(content=content),
                        finish_reason=finish_reason,
                    )
                ],
                usage=Usage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=prompt_tokens + completion_tokens,
                ),
            )
        elif error is None:
            error = ProviderError(
                status_code=499,
                code="stream_abandoned",
                message="Stream closed before the terminal chunk",
                error_type="client",
            )

        status = "ok" if response is not None else "error"
        log_fields = {**log_extra, "latency_ms": latency_ms}
        if response is not None:
            logger.info(
                "stream_completed",
                extra={
                    **log_fields,
                    "token_in": response.usage.prompt_tokens,
                    "token_out": response.usage.completion_tokens,
                },
            )
        else:
            logger.warning("stream_failed", extra={**log_fields, "error": self._error_code(error)})

        if self._settings.metrics_enabled:
            record_completion(
                provider=selection.name,
                model=selection.model,
                status=status,
                streaming=True,
                latency_s=latency_ms / 1000.0,
                tokens_in=response.usage.prompt_tokens if response else 0,
                tokens_out=response.usage.completion_tokens if response else 0,
            )

        if not self._settings.persist_streaming_completions:
            return
        await self._persist(
            self._build_record(
                request=request,
                caller=caller,
                selection=selection,
                request_id=request_id,
                created_at=created_at,
                stream=True,
                response=response,
                error=error if response is None else None,
            ),
            log_extra,
        )

    def _build_record(
        self,
        request: CompletionRequest,
        caller: AuthenticatedCaller,
        selection: ProviderSelection,
        request_id: str,
        created_at: datetime,
        stream: bool,
        response: CompletionResponse | None,
        message_id: str | None = None,
        error: BaseException | None = None,
    ) -> CompletionRecord:
        if response is not None:
            return CompletionRecord(
                request_id=request_id,
                user_id=caller.id,
                thread_ref=request.thread_ref,
                message_id=message_id,
                model=selection.model,
                provider=selection.name,
                messages=list(request.messages),
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                top_p=request.top_p,
                stop=request.stop_list,
                stream=stream,
                response=response.model_dump(mode="json"),
                usage=response.usage,
                finish_reason=response.finish_reason,
                created_at=created_at,
                completed_at=datetime.now(UTC),
            )

        return CompletionRecord(
            request_id=request_id,
            user_id=caller.id,
            thread_ref=request.thread_ref,
            model=selection.model,
            provider=selection.name,
            messages=list(request.messages),
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            top_p=request.top_p,
            stop=request.stop_list,
            stream=stream,
            response={"error": self._error_payload(error)},
            error=self._error_message(error),
            created_at=created_at,
        )

    async def _persist(
        self, record: CompletionRecord, log_extra: dict[str, Any]
    ) -> CompletionRecord:
        """Write ``record``; failures are logged and never replace the call outcome."""
        try:
            record_id = await asyncio.to_thread(self._record_sink.write, record)
        except Exception as exc:
            logger.warning(
                "completion_record_write_failed",
                extra={**log_extra, "error": str(exc)},
                exc_info=True,
            )
            if self._settings.metrics_enabled:
                record_write_failure(streaming=record.stream)
            return record
        return record.model_copy(update={"id": record_id})

    @staticmethod
    def _completion_id(request_id: str) -> str:
        return f"chatcmpl-{request_id}"

    @staticmethod
    def _error_code(exc: BaseException | None) -> str:
        if isinstance(exc, ProviderError | AppError):
            return exc.code
        return type(exc).__name__

    @staticmethod
    def _error_message(exc: BaseException | None) -> str:
        if exc is None:
            return "unknown error"
        return str(exc) or type(exc).__name__

    @classmethod
    def _error_payload(cls, exc: BaseException | None) -> dict[str, object]:
        if isinstance(exc, ProviderError):
            return exc.as_payload()
        if isinstance(exc, AppError):
            return {
                "code": exc.code,
                "message": exc.message,
                "type": exc.error_type,
                "status_code": exc.status_code,
            }
        return {
            "code": cls._error_code(exc),
            "message": cls._error_message(exc),
            "type": "internal",
        }
