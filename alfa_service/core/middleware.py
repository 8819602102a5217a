"""Request size limiting for policy uploads."""

import logging
from collections.abc import Callable

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

_TOO_LARGE_BODY = '{"error":"Request body exceeds maximum allowed size"}'


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware to limit request body size.

    Policy sources are written to disk and handed to the language server,
    so oversized uploads are rejected before any route runs.

    Validates both the Content-Length header AND the actual body size so a
    missing or falsified header cannot bypass the limit.
    """

    def __init__(self, app, max_size_mb: int = 1):
        """
        Initialize middleware with max request size.

        Args:
            app: ASGI application
            max_size_mb: Maximum request size in megabytes (default: 1MB)
        """
        super().__init__(app)
        self.max_size_bytes = max_size_mb * 1024 * 1024

    def _too_large(self, request: Request, size: int, source: str) -> Response:
        logger.warning(
            f"Request size {size} bytes ({source}) exceeds limit {self.max_size_bytes} bytes",
            extra={"path": request.url.path},
        )
        return Response(
            content=_TOO_LARGE_BODY,
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            media_type="application/json",
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request and enforce size limit.

        Args:
            request: Incoming request
            call_next: Next middleware/route handler

        Returns:
            Response or 413 error if request too large
        """
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                # Invalid header; the actual body size is checked below
                size = 0
            if size > self.max_size_bytes:
                return self._too_large(request, size, "from header")

        if request.method in ("POST", "PUT", "PATCH"):
            body = await request.body()
            if len(body) > self.max_size_bytes:
                return self._too_large(request, len(body), "actual")

            # The body was consumed above; replay it for downstream handlers
            async def receive():
                return {"type": "http.request", "body": body, "more_body": False}

            request._receive = receive

        return await call_next(request)
