"""
Request ID Middleware for Correlation Tracking
Adds unique request IDs to every API call so approval decisions and
operator actions can be traced through the logs.
"""
import logging
import re
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

# Context variable to store request ID across async contexts
request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_SESSION_PATH = re.compile(r"^/api/sessions/(?P<session_id>[^/]+)")


def session_id_from_path(path: str) -> Optional[str]:
    """Session id addressed by an API path, if any."""
    match = _SESSION_PATH.match(path)
    return match.group("session_id") if match else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request IDs for correlation tracking.

    Accepts an existing X-Request-ID header from clients, otherwise
    generates one; echoes it on the response and logs request duration.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request_id_context.set(request_id)
        request.state.request_id = request_id
        session_id = session_id_from_path(request.url.path)

        start_time = time.time()
        logger.debug(
            "Request started",
            extra={
                "request_id": request_id,
                "session_id": session_id,
                "method": request.method,
                "path": request.url.path,
            },
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request failed: {e}",
                extra={
                    "request_id": request_id,
                    "session_id": session_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round(duration * 1000, 2),
                },
                exc_info=True,
            )
            raise

        duration = time.time() - start_time
        response.headers[self.header_name] = request_id
        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "session_id": session_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return response


def get_request_id() -> Optional[str]:
    """Current request ID, or None outside a request."""
    return request_id_context.get()
