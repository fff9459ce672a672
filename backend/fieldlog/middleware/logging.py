"""
FieldLog Backend: Request Logging Middleware
==============================================

What:  One access log line per HTTP request, on the "fieldlog.access" logger.
How:   Measures the time until the response starts and picks the log level
       from the status code (5xx ERROR, 4xx WARNING, otherwise INFO).

Logged fields (also passed as `extra` for structured handlers):
    request_id, method, path, status, duration_ms, client_ip

Request bodies are never logged; observations may carry locations and
free-text notes.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from fieldlog.middleware.request_id import request_id_var

logger = logging.getLogger("fieldlog.access")

# Probed every few seconds by containers; not worth a line each
QUIET_PATHS = frozenset({"/health"})


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access logging with request ID correlation.

    For streamed sync responses the duration covers only the time to the
    first byte; the orchestrator logs when the replication itself ends.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        method = request.method
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        logger.log(
            _level_for(status),
            "%s %s %d %.1fms [%s] from %s",
            method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
