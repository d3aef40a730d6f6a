"""
Correlation IDs for hook calls and the reconcile jobs they spawn.

A hook request is tagged with X-Correlation-ID (caller supplied, kept
across calls) and X-Request-ID (one per request). Both live in context
variables; the worker pool captures them at submit time and rebinds them
while the job runs, so a reconcile pass logs under the IDs of the hook
call that queued it. Scheduler runs have no request and log "-".
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Tuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

CORRELATION_HEADER = "X-Correlation-ID"
REQUEST_HEADER = "X-Request-ID"
NO_ID = "-"

correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def current_ids() -> Tuple[str, str]:
    """(correlation_id, request_id) bound to the running context."""
    return correlation_id_ctx.get(), request_id_ctx.get()


@contextmanager
def bound_ids(correlation_id: str, request_id: str) -> Iterator[None]:
    """Bind IDs for the duration of a block, restoring the previous ones after."""
    correlation_token = correlation_id_ctx.set(correlation_id)
    request_token = request_id_ctx.set(request_id)
    try:
        yield
    finally:
        correlation_id_ctx.reset(correlation_token)
        request_id_ctx.reset(request_token)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request's IDs and echoes them on the response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_id()
        request_id = request.headers.get(REQUEST_HEADER) or new_id()
        request.state.correlation_id = correlation_id
        request.state.request_id = request_id

        with bound_ids(correlation_id, request_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[REQUEST_HEADER] = request_id
        return response


class CorrelationLogFilter(logging.Filter):
    """Adds correlation_id / request_id attributes to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        correlation_id, request_id = current_ids()
        record.correlation_id = correlation_id or NO_ID
        record.request_id = request_id or NO_ID
        return True
