"""Request-ID and metrics middleware for the box API.

- ``RequestIdMiddleware`` accepts or generates ``X-Request-ID``, stores it
  in ``request_id_ctx`` for log correlation, and echoes it back.
- ``MetricsMiddleware`` records Prometheus HTTP counters and histograms.
"""

from __future__ import annotations

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .logging import request_id_ctx
from .metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_FLIGHT,
    HTTP_REQUESTS_TOTAL,
)

_VALID_REQUEST_ID = re.compile(r"^[a-zA-Z0-9\-]{8,128}$")

# Collapse ids so metric labels stay low-cardinality.
_PATH_NORMALIZERS = [
    (re.compile(r"/api/v1/boxes/[^/]+"), "/api/v1/boxes/{id}"),
    (re.compile(r"/api/v1/cronjobs/[^/]+"), "/api/v1/cronjobs/{id}"),
]


def _normalize_path(path: str) -> str:
    for pattern, replacement in _PATH_NORMALIZERS:
        path = pattern.sub(replacement, path)
    return path


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate or accept X-Request-ID and propagate it via contextvars.

    Malformed incoming ids are replaced with a fresh UUID.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        incoming_id = request.headers.get("x-request-id", "")
        if incoming_id and _VALID_REQUEST_ID.match(incoming_id):
            rid = incoming_id
        else:
            rid = str(uuid.uuid4())

        request.state.request_id = rid
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        response.headers["X-Request-ID"] = rid
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        path = _normalize_path(request.url.path)
        method = request.method

        HTTP_REQUESTS_IN_FLIGHT.inc()
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status="500").inc()
            raise
        finally:
            HTTP_REQUESTS_IN_FLIGHT.dec()
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(
                time.perf_counter() - start,
            )

        HTTP_REQUESTS_TOTAL.labels(
            method=method, path=path, status=str(response.status_code),
        ).inc()
        return response
