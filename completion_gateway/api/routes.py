import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from completion_gateway.core.errors import AppError, request_id_from_request
from completion_gateway.core.identity import AuthenticatedCaller
from completion_gateway.metrics import metrics_router
from completion_gateway.models.openai import (
    CompletionRecord,
    CompletionRequest,
    CompletionResponse,
    ModelCard,
    ModelList,
    StreamChunk,
)
from completion_gateway.providers.base import ProviderError
from completion_gateway.providers.streaming import SSE_DONE, sse_frame
from completion_gateway.services.completion_service import CompletionService

logger = logging.getLogger("cgw.api")

router = APIRouter()
router.include_router(metrics_router)


def _service(request: Request) -> CompletionService:
    return request.app.state.completion_service


def _caller(request: Request) -> AuthenticatedCaller:
    return request.state.caller


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/v1/models", response_model=ModelList)
def list_models(request: Request) -> ModelList:
    descriptors = _service(request).get_available_models()
    return ModelList(
        data=[
            ModelCard(
                id=descriptor.model_id,
                owned_by=descriptor.provider_family,
                context_length=descriptor.max_tokens,
                supports_streaming=descriptor.supports_streaming,
            )
            for descriptor in descriptors
        ]
    )


@router.get("/v1/completions/{record_id}", response_model=CompletionRecord)
def get_completion(request: Request, record_id: str) -> CompletionRecord:
    record = _service(request).get_completion(record_id, _caller(request))
    if record is None:
        raise AppError(
            404, "completion_not_found", "completion", f"Completion {record_id} not found"
        )
    return record


@router.post(
    "/v1/chat/completions",
    response_model=CompletionResponse,
    response_model_exclude_none=True,
)
async def chat_completions(
    request: Request, payload: CompletionRequest
) -> CompletionResponse | StreamingResponse:
    service = _service(request)
    caller = _caller(request)
    if not payload.stream:
        result = await service.create_completion(payload, caller)
        return result.response

    chunks = service.create_streaming_completion(payload, caller)
    # Errors before the first chunk surface as a regular HTTP error response.
    first_chunk = await anext(chunks)
    return StreamingResponse(
        _event_stream(chunks, first_chunk, request_id_from_request(request)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _event_stream(
    chunks: AsyncIterator[StreamChunk], first_chunk: StreamChunk, request_id: str
) -> AsyncIterator[str]:
    try:
        yield sse_frame(first_chunk.to_openai())
        async for chunk in chunks:
            yield sse_frame(chunk.to_openai())
    except ProviderError as exc:
        logger.warning(
            "stream_error_frame",
            extra={"request_id": request_id, "error": exc.code, "status_code": exc.status_code},
        )
        yield sse_frame({"error": {**exc.as_payload(), "request_id": request_id}})
        return
    finally:
        await chunks.aclose()  # type: ignore[attr-defined]
    yield sse_frame(SSE_DONE)
