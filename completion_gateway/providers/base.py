from collections.abc import AsyncIterator
from typing import Protocol

from completion_gateway.models.openai import CompletionRequest, CompletionResponse, StreamChunk
from completion_gateway.providers.catalog import ProviderDescriptor


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        error_type: str = "provider",
        detail: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_type = error_type
        self.detail = detail

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "type": self.error_type,
            "status_code": self.status_code,
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


class CompletionProvider(Protocol):
    async def chat(self, request: CompletionRequest) -> CompletionResponse:
        """Return one complete response for ``request``."""

    def chat_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """Yield normalized chunks ending with exactly one terminal chunk."""

    def supported_models(self) -> list[ProviderDescriptor]:
        """Return the descriptors this provider can serve."""
