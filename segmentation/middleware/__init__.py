"""
Middleware modules for the segmentation API.

- Correlation ID tracking for request/worker log tracing
"""

from .correlation import (
    CorrelationIdMiddleware,
    CorrelationLogFilter,
    bound_ids,
    correlation_id_ctx,
    current_ids,
    request_id_ctx,
)

__all__ = [
    "CorrelationIdMiddleware",
    "CorrelationLogFilter",
    "bound_ids",
    "correlation_id_ctx",
    "current_ids",
    "request_id_ctx",
]
