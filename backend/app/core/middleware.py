"""
Request middleware — correlation IDs, timing and access logging.

Provides:
    • X-Request-ID header (taken from the caller or generated)
    • X-Process-Time header
    • One access log line per request, with the request id carried in
      the log context for everything logged while handling it
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_log_context

logger = logging.getLogger(__name__)

# Probes and docs are not worth an access log line
_QUIET_PREFIXES = ("/health", "/docs", "/redoc", "/openapi", "/favicon")


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        user_id = request.headers.get("X-User-Id")

        set_log_context(request_id=request_id, endpoint=path, method=request.method,
                        **({"user_id": user_id} if user_id else {}))
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms)", request.method, path, duration_ms,
                extra={"duration_ms": duration_ms, "status_code": 500, "endpoint": path},
            )
            set_log_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                level,
                "%s %s → %d (%.1fms)",
                request.method, path, response.status_code, duration_ms,
                extra={
                    "duration_ms": round(duration_ms, 1),
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_log_context()
        return response
