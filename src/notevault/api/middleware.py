"""Middleware for HTTP error logging."""

import logging
import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Request bodies are file streams, so identifiers come from the path only
_USER_PATH = re.compile(r"/users/(?P<user_id>[^/]+)")
_FILE_PATH = re.compile(r"/files/(?P<file_id>[^/]+)")


class HTTPErrorLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to ensure all HTTP errors are logged.

    - 4xx responses: logged at WARN level
    - 5xx responses: logged at ERROR level
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        path = request.url.path
        user_match = _USER_PATH.search(path)
        file_match = _FILE_PATH.search(path)
        user_id = user_match.group("user_id") if user_match else None
        file_id = file_match.group("file_id") if file_match else None

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000

        if 400 <= response.status_code < 500:
            logger.warning(
                "Client error response",
                extra={
                    "http_status": response.status_code,
                    "method": request.method,
                    "path": path,
                    "user_id": user_id,
                    "file_id": file_id,
                    "duration_ms": duration_ms,
                },
            )
        elif response.status_code >= 500:
            logger.error(
                "Server error response",
                extra={
                    "http_status": response.status_code,
                    "method": request.method,
                    "path": path,
                    "user_id": user_id,
                    "file_id": file_id,
                    "duration_ms": duration_ms,
                },
            )

        return response
