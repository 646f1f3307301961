from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from projectsync.logging_config import log_context

_log = logging.getLogger("projectsync.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each HTTP request with an id and log its status and duration.

    Websocket traffic bypasses this middleware; the websocket handler binds
    the connection's client id to the logging context instead.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        id_header: str = "X-Request-ID",
        timing_header: str = "X-Process-Time",
    ):
        super().__init__(app)
        self.id_header = id_header
        self.timing_header = timing_header

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get(self.id_header) or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.perf_counter()
        with log_context(request_id=rid):
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            _log.info(
                "http_request",
                extra={
                    "http": {
                        "path": request.url.path,
                        "method": request.method,
                        "status_code": response.status_code,
                        "duration_ms": round(elapsed * 1000, 3),
                    }
                },
            )
        response.headers[self.id_header] = rid
        response.headers[self.timing_header] = f"{elapsed:.6f}s"
        return response


__all__ = ["RequestContextMiddleware"]
