from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from completion_gateway.api.routes import router
from completion_gateway.config.settings import get_settings
from completion_gateway.core.errors import AppError, app_error_response, request_id_from_request
from completion_gateway.core.logging import configure_logging
from completion_gateway.middleware.auth import AuthMiddleware
from completion_gateway.middleware.request_id import RequestIDMiddleware
from completion_gateway.providers.base import ProviderError
from completion_gateway.providers.selector import build_providers
from completion_gateway.records.store import JsonlCompletionStore
from completion_gateway.services.completion_service import CompletionService
from completion_gateway.threads.store import InMemoryConversationStore

PASSTHROUGH_PROVIDER_STATUSES = {429, 501, 502, 503, 504}


def provider_error_status(exc: ProviderError) -> tuple[int, str, str]:
    """HTTP status, code and type a provider error is reported with."""
    if 400 <= exc.status_code < 500 or exc.status_code in PASSTHROUGH_PROVIDER_STATUSES:
        return exc.status_code, exc.code, exc.error_type
    return 502, "provider_upstream_error", "provider"


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    providers = build_providers(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await providers.workflow.close()

    app = FastAPI(title="Completion Gateway", version="0.1.0", lifespan=lifespan)

    app.add_middleware(AuthMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.state.conversation_store = InMemoryConversationStore()
    app.state.completion_service = CompletionService(
        settings=settings,
        record_sink=JsonlCompletionStore(settings.records_path),
        conversation_store=app.state.conversation_store,
        providers=providers,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            exc.status_code, exc.code, exc.error_type, exc.message, request_id, exc.detail
        )

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
        request_id = request_id_from_request(request)
        status_code, code, error_type = provider_error_status(exc)
        return app_error_response(
            status_code, code, error_type, exc.message, request_id, exc.detail
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            422, "request_validation_failed", "validation", str(exc), request_id
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            500, "internal_error", "internal", "Internal server error", request_id
        )

    app.include_router(router)
    return app


app = create_app()
