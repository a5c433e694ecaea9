"""Request context middleware for observability.

Responsibilities, handled in one pass:
- Generate or propagate the ``X-Request-ID`` header
- Measure request duration
- Log every request/response as a structured record

Quotas are not enforced here. They are per operation and per caller, so
they run as route dependencies (see ``core.components.admit``).
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ..core.logging_config import request_id_var

logger = logging.getLogger(__name__)

# Health checks are logged at debug level to keep them out of the request log.
_QUIET_PATHS = frozenset({"/", "/health", "/health/storage"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Request id, timing and the per-request log line."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # --- Request ID ---
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request_id_var.set(rid)

        # --- Timing ---
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        # --- Response headers ---
        response.headers["X-Request-ID"] = rid
        response.headers["X-Response-Time"] = f"{duration_ms}ms"

        # --- Structured request log ---
        level = logging.DEBUG if request.url.path in _QUIET_PATHS else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        return response
