import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from bookstore.utils.logger import set_request_context, clear_request_context


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Attach a request id to every request for log correlation.

    An inbound X-Request-ID (e.g. from a gateway retrying a callback) is reused.
    """

    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = req_id
        ip_address = client_ip(request)

        tokens = set_request_context(
            request_id=req_id,
            user_id=None,
            ip_address=ip_address,
        )
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = req_id
            return response
        finally:
            clear_request_context(tokens)


def client_ip(request: Request):
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
