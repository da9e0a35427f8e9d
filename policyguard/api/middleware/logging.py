"""Structured JSON request logging middleware for the PolicyGuard API.

:class:`RequestLoggingMiddleware` writes one ``http_request`` JSON log line
at ``INFO`` level per request, after the response has been produced::

    {
      "event": "http_request",
      "correlation_id": "550e8400-e29b-41d4-a716-446655440000",
      "method": "POST",
      "path": "/v1/uploads/3f2c.../process",
      "status_code": 202,
      "duration_ms": 12.4
    }

The correlation id comes from the ``X-Correlation-ID`` (or ``X-Request-ID``)
request header, or is generated as a UUID v4.  It is stored on
``request.state.correlation_id`` for handlers and echoed in the
``X-Correlation-ID`` response header.

Query strings are never logged: signed redacted-text URLs carry their
credential there.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_CORRELATION_HEADERS: tuple[str, ...] = ("x-correlation-id", "x-request-id")
_MAX_CORRELATION_ID_LEN = 128


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Per-request JSON access log with correlation ids."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = self._extract_correlation_id(request)
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            self._log(request, correlation_id, 500, start)
            raise

        self._log(request, correlation_id, response.status_code, start)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @staticmethod
    def _log(request: Request, correlation_id: str, status_code: int, start: float) -> None:
        log_entry = {
            "event": "http_request",
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round((time.monotonic() - start) * 1000, 2),
        }
        if status_code >= 500:
            logger.error(json.dumps(log_entry))
        else:
            logger.info(json.dumps(log_entry))

    @staticmethod
    def _extract_correlation_id(request: Request) -> str:
        for header in _CORRELATION_HEADERS:
            value = request.headers.get(header, "").strip()
            if value:
                return value[:_MAX_CORRELATION_ID_LEN]
        return str(uuid.uuid4())
