from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from completion_gateway.config.settings import get_settings
from completion_gateway.core.errors import app_error_response, request_id_from_request
from completion_gateway.core.identity import AuthenticatedCaller

USER_ID_HEADER = "x-cgw-user-id"
USER_EMAIL_HEADER = "x-cgw-user-email"
USER_ROLE_HEADER = "x-cgw-user-role"
BYPASS_PATHS = {"/healthz", "/metrics", "/openapi.json", "/docs", "/docs/oauth2-redirect"}


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in BYPASS_PATHS:
            return await call_next(request)

        request_id = request_id_from_request(request)
        settings = get_settings()

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return app_error_response(
                401, "auth_missing", "auth", "Missing bearer token", request_id
            )

        token = auth_header.removeprefix("Bearer ").strip()
        if token not in settings.api_key_set:
            return app_error_response(401, "auth_invalid", "auth", "Invalid API key", request_id)

        user_id = request.headers.get(USER_ID_HEADER, "").strip()
        if not user_id:
            return app_error_response(
                422,
                "missing_required_headers",
                "validation",
                f"Missing required headers: {USER_ID_HEADER}",
                request_id,
            )

        request.state.caller = AuthenticatedCaller(
            id=user_id,
            email=request.headers.get(USER_EMAIL_HEADER) or None,
            role=request.headers.get(USER_ROLE_HEADER) or "user",
        )
        return await call_next(request)
