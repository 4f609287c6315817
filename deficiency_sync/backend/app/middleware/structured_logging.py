# backend/app/middleware/structured_logging.py
from __future__ import annotations

import logging
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("deficiency_sync.request")


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line per request: method, path, status_code, latency_ms.
    The request id is picked up by JsonFormatter from the request context,
    so this must run inside RequestIDMiddleware.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        t0 = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - t0) * 1000)
            log.info(
                f"{request.method} {request.url.path} {status_code} {latency_ms}ms",
                extra={"method": request.method, "path": request.url.path, "status_code": status_code, "latency_ms": latency_ms},
            )
