from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from completion_gateway.core.errors import REQUEST_ID_HEADER, request_id_from_request


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind the request id before anything downstream runs and echo it back.

    Error responses built from the envelope already carry the header, so it is
    only filled in when missing.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request_id_from_request(request)
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response
