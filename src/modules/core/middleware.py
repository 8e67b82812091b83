import time
import uuid
from contextvars import ContextVar
from typing import Callable

import structlog
from django.http import HttpRequest, HttpResponse

REQUEST_ID_HEADER = "X-Request-ID"

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

logger = structlog.get_logger()


def current_request_id() -> str:
    """Request id of the HTTP request being served, or ``""`` outside one."""
    return request_id_var.get()


class CorrelationIdMiddleware:
    """Tag every request with a request id and log its outcome.

    The id comes from the ``X-Request-ID`` header or is a fresh UUID4.
    It is bound into structlog's context so every order, cancellation
    and refund log line emitted while serving the request carries it,
    it is forwarded to the refund gateway, and it is echoed back on the
    response.
    """

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        request_id = request.META.get("HTTP_X_REQUEST_ID") or str(uuid.uuid4())
        token = request_id_var.set(request_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id, method=request.method, path=request.path
        )
        started = time.monotonic()

        try:
            response = self.get_response(request)
        finally:
            request_id_var.reset(token)

        logger.info(
            "http.request_finished",
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        structlog.contextvars.clear_contextvars()

        response[REQUEST_ID_HEADER] = request_id
        return response
