"""
HTTP middleware for the CertChain service.
Request logging, security headers, upload size limits and CORS.
"""

import time
import uuid
from typing import Callable, Sequence

from fastapi import Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..utils.logger import get_logger

logger = get_logger("middleware")


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs each request with a short request id, status code and duration.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        start_time = time.time()

        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"

        logger.info(f"[{request_id}] {method} {path} - Client: {client_ip}")

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(f"[{request_id}] {method} {path} - Error: {e} - Time: {process_time:.4f}s")
            raise

        process_time = time.time() - start_time
        logger.info(
            f"[{request_id}] {method} {path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.4f}s"
        )

        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response


class UploadSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Rejects uploads whose declared size exceeds the configured limit.

    Only the Content-Length header is checked here; the upload route enforces
    the limit again on the bytes actually received.
    """

    def __init__(self, app, max_bytes: int, paths: Sequence[str] = ("/api/v1/bulk/upload",)):
        super().__init__(app)
        self.max_bytes = max_bytes
        self.paths = tuple(paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method == "POST" and request.url.path in self.paths:
            declared = request.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                logger.warning(f"Rejected upload of {declared} bytes on {request.url.path}")
                return JSONResponse(
                    status_code=413,
                    content={
                        "error": "Payload Too Large",
                        "message": f"Maximum upload size is {self.max_bytes // (1024 * 1024)} MB"
                    }
                )
        return await call_next(request)


def setup_cors_middleware(app):
    """
    Setup CORS middleware.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time", "Content-Disposition"]
    )


def setup_middleware_stack(app, max_upload_size: int):
    """
    Setup the middleware stack for the application.

    Args:
        app: FastAPI application instance
        max_upload_size: Largest accepted upload in bytes
    """
    # Added last runs first
    app.add_middleware(UploadSizeLimitMiddleware, max_bytes=max_upload_size)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(LoggingMiddleware)
    setup_cors_middleware(app)
