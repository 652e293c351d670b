"""Middleware configuration for the intake API.

This module sets up middleware for request correlation, logging, error
handling and security headers.
"""

import logging
import time
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from intake_gateway.infrastructure.request_context import new_request_id, request_scope
from intake_gateway.infrastructure.settings import settings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"
MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id to every request and echo it in the response.

    An incoming X-Request-ID or X-Correlation-ID is honoured; otherwise a new
    id is generated. The id is exposed as request.state.request_id.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER) or request.headers.get(CORRELATION_ID_HEADER)
        request_id = incoming.strip()[:MAX_REQUEST_ID_LENGTH] if incoming and incoming.strip() else new_request_id()
        request.state.request_id = request_id

        with request_scope(request_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response details.

        Parameters:
            request: Incoming HTTP request
            call_next: Next middleware or route handler

        Returns:
            Response: HTTP response with X-Process-Time header
        """
        start_time = time.time()

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )

        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.3f}"

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.3f}s"
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for global error handling.

    Security Impact:
        - Unexpected errors return a generic body; details only go to the log
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unexpected error: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "code": "INTERNAL_ERROR",
                    "requestId": getattr(request.state, "request_id", None),
                }
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware for adding security headers.

    Security Impact:
        - Prevents MIME type sniffing and framing
        - Enforces HTTPS in production when HSTS is enabled
        - Responses carrying PHI are never cached
    """

    def __init__(self, app, enable_hsts: bool = False):
        """Initialize security headers middleware.

        Parameters:
            app: FastAPI application
            enable_hsts: Enable HSTS header (use in production with HTTPS)
        """
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if self.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


def setup_middleware(app) -> None:
    """Setup application middleware.

    Parameters:
        app: FastAPI application instance

    Middleware Order (outermost first):
        1. RequestIdMiddleware - Binds the correlation id for everything below
        2. SecurityHeadersMiddleware - Adds security headers
        3. LoggingMiddleware - Logs requests/responses
        4. ErrorHandlingMiddleware - Converts unexpected errors to 500 bodies
    """
    # Starlette runs the last-added middleware first
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.enable_hsts)
    app.add_middleware(RequestIdMiddleware)
