"""
Request ID middleware for correlation tracking.

Accepts an incoming X-Request-ID or generates one, exposes it through a
ContextVar and request.state, and echoes it on the response.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request_id_context.set(request_id)
        request.state.request_id = request_id
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "Request %s %s failed (request_id=%s, %.1fms)",
                request.method,
                request.url.path,
                request_id,
                (time.perf_counter() - start_time) * 1000,
                exc_info=True,
            )
            raise

        response.headers[self.header_name] = request_id
        logger.info(
            "%s %s -> %d (request_id=%s, %.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            request_id,
            (time.perf_counter() - start_time) * 1000,
        )
        return response


def get_request_id() -> Optional[str]:
    return request_id_context.get()
