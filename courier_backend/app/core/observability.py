"""
Request observability.

Every request gets a correlation id (taken from the caller when present) and
one structured log line once the response is ready. Parcel routes also log
the parcel id so a parcel's workflow can be followed across requests.
"""

import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("courier.http")

CORRELATION_HEADER = "X-Correlation-ID"


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Process-Time"] = str(elapsed_ms)

        context = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": elapsed_ms,
        }
        parcel_id = request.scope.get("path_params", {}).get("parcel_id")
        if parcel_id is not None:
            context["parcel_id"] = parcel_id

        logger.log(
            _level_for(response.status_code),
            "%s %s -> %s (%.2fms)",
            request.method, request.url.path, response.status_code, elapsed_ms,
            extra=context,
        )
        return response
