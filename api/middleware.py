# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id and measures its latency.

    Headers:
    - X-Request-ID (reused from the caller when supplied)
    - X-API-Latency-ms
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        logger.debug(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)")
        return response
