"""Tests for correlation ID propagation into log records and responses."""
import logging

import pytest
from httpx import AsyncClient

from segmentation.middleware.correlation import (
    CorrelationLogFilter,
    bound_ids,
    current_ids,
)


def make_record() -> logging.LogRecord:
    return logging.LogRecord("segmentation", logging.INFO, __file__, 1, "reconciled", None, None)


def test_filter_injects_bound_ids():
    with bound_ids("corr-1", "req-1"):
        record = make_record()
        assert CorrelationLogFilter().filter(record) is True
        assert record.correlation_id == "corr-1"
        assert record.request_id == "req-1"


def test_filter_defaults_outside_a_request():
    record = make_record()
    CorrelationLogFilter().filter(record)
    assert record.correlation_id == "-"
    assert record.request_id == "-"


def test_bound_ids_restores_previous_values():
    with bound_ids("outer", "outer-req"):
        with bound_ids("inner", "inner-req"):
            assert current_ids() == ("inner", "inner-req")
        assert current_ids() == ("outer", "outer-req")
    assert current_ids() == ("", "")


@pytest.mark.asyncio
async def test_response_echoes_caller_correlation_id(client: AsyncClient):
    response = await client.get("/health", headers={"X-Correlation-ID": "session-42"})

    assert response.status_code == 200
    assert response.headers["X-Correlation-ID"] == "session-42"
    assert response.headers["X-Request-ID"]
