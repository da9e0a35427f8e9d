"""Unit tests for policyguard/api/middleware/logging.py.

Coverage targets:
* Correlation id taken from X-Correlation-ID, then X-Request-ID, else a UUID v4.
* Correlation id stored on request.state and echoed in the response header.
* One JSON ``http_request`` record per request with every field present.
* Query strings never reach the log.
* Handler exceptions are logged as 500 at ERROR level and re-raised.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from policyguard.api.middleware.logging import RequestLoggingMiddleware

_LOGGER = "policyguard.api.middleware.logging"


def _make_app() -> FastAPI:
    app = FastAPI()

    @app.get("/v1/redacted/{file_id}")
    async def redacted(file_id: str, request: Request) -> dict:
        return {"correlation_id": getattr(request.state, "correlation_id", None)}

    @app.get("/boom")
    async def boom() -> dict:
        raise RuntimeError("handler failed")

    app.add_middleware(RequestLoggingMiddleware)
    return app


def _entries(caplog: Any) -> list[dict]:
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == _LOGGER]


@pytest.fixture
def client() -> TestClient:
    return TestClient(_make_app(), raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# Correlation id
# ---------------------------------------------------------------------------


class TestCorrelationId:
    def test_correlation_header_used(self, client) -> None:
        response = client.get("/v1/redacted/f", headers={"X-Correlation-ID": "corr-1"})
        assert response.headers["x-correlation-id"] == "corr-1"
        assert response.json()["correlation_id"] == "corr-1"

    def test_request_id_fallback(self, client) -> None:
        response = client.get("/v1/redacted/f", headers={"X-Request-ID": "req-1"})
        assert response.headers["x-correlation-id"] == "req-1"

    def test_correlation_header_wins(self, client) -> None:
        response = client.get(
            "/v1/redacted/f",
            headers={"X-Correlation-ID": "primary", "X-Request-ID": "secondary"},
        )
        assert response.headers["x-correlation-id"] == "primary"

    def test_generated_uuid(self, client) -> None:
        response = client.get("/v1/redacted/f")
        corr_id = response.headers["x-correlation-id"]
        assert str(uuid.UUID(corr_id)) == corr_id
        assert response.json()["correlation_id"] == corr_id

    def test_blank_header_ignored(self, client) -> None:
        response = client.get("/v1/redacted/f", headers={"X-Correlation-ID": "   "})
        uuid.UUID(response.headers["x-correlation-id"])

    def test_long_header_truncated(self, client) -> None:
        response = client.get("/v1/redacted/f", headers={"X-Correlation-ID": "a" * 500})
        assert response.headers["x-correlation-id"] == "a" * 128


# ---------------------------------------------------------------------------
# Log entry
# ---------------------------------------------------------------------------


class TestLogEntry:
    def test_single_entry_with_all_fields(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger=_LOGGER):
            client.get("/v1/redacted/f", headers={"X-Correlation-ID": "corr-1"})

        entries = _entries(caplog)
        assert len(entries) == 1
        entry = entries[0]
        assert entry["event"] == "http_request"
        assert entry["correlation_id"] == "corr-1"
        assert entry["method"] == "GET"
        assert entry["path"] == "/v1/redacted/f"
        assert entry["status_code"] == 200
        assert entry["duration_ms"] >= 0

    def test_query_string_not_logged(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger=_LOGGER):
            client.get("/v1/redacted/f?expires=1700000000&sig=deadbeef")

        assert "deadbeef" not in caplog.text
        assert _entries(caplog)[0]["path"] == "/v1/redacted/f"

    def test_not_found_logged_at_info(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger=_LOGGER):
            client.get("/missing")

        record = next(r for r in caplog.records if r.name == _LOGGER)
        assert record.levelno == logging.INFO
        assert json.loads(record.getMessage())["status_code"] == 404

    def test_handler_exception_logged_as_error(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger=_LOGGER):
            response = client.get("/boom")

        assert response.status_code == 500
        record = next(r for r in caplog.records if r.name == _LOGGER)
        assert record.levelno == logging.ERROR
        assert json.loads(record.getMessage())["status_code"] == 500
