"""FastAPI middleware that captures unhandled exceptions and logs them to the DB.

Every 5xx response is recorded in the error_logs table; the request path
is stored as the entity so failed admin actions can be traced.
"""

from __future__ import annotations

import logging
import time

from fastapi import HTTPException, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from residence_ledger.models.error_log import ErrorSeverity
from residence_ledger.services.error_logger import log_error_standalone

logger = logging.getLogger("residence_ledger.middleware")


class ErrorCaptureMiddleware(BaseHTTPMiddleware):
    """Catches unhandled exceptions, returns 500, and persists the error."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        target = f"{request.method} {request.url.path}"

        try:
            response = await call_next(request)
        except Exception as exc:
            if isinstance(exc, HTTPException) and exc.status_code < 500:
                raise
            elapsed_ms = round((time.time() - start) * 1000, 2)
            severity = ErrorSeverity.CRITICAL if "database" in str(exc).lower() else ErrorSeverity.ERROR
            await log_error_standalone(
                exc,
                severity=severity,
                module="middleware.error_capture",
                function_name="dispatch",
                entity_type="request",
                entity_id=target,
            )
            logger.exception("Unhandled exception on %s after %sms", target, elapsed_ms)
            return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

        if response.status_code >= 500:
            await log_error_standalone(
                Exception(f"HTTP {response.status_code} on {target}"),
                severity=ErrorSeverity.ERROR,
                module="middleware.error_capture",
                function_name="dispatch",
                entity_type="request",
                entity_id=target,
            )
        return response
